"""Process-lifetime memoization of validation and optimization results."""

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pydantic import BaseModel

from .models import CacheStats, SourceFile, UploadRecord

T = TypeVar("T")

VALIDATION = "validation"
OPTIMIZATION = "optimization"
UPLOAD = "upload"


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def cache_key(operation: str, source: SourceFile, *parts: Optional[BaseModel]) -> str:
    """``operation-fingerprint-digest`` where the digest covers the serialized options."""
    serialized = "|".join(part.model_dump_json() if part is not None else "" for part in parts)
    digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]
    return f"{operation}-{source.fingerprint}-{digest}"


class ProcessingCache:
    """
    Keyed result store shared by every file pipeline of one orchestrator.
    Stored uploads are only tallied by record id so the same file can be
    uploaded again once its record is gone.

    Concurrent callers asking for the same key wait on a per-key lock, so a
    value is computed once and never overwritten by a racing duplicate.
    Failed computations are not cached.
    """

    def __init__(self) -> None:
        self._stores: Dict[str, Dict[str, Any]] = {VALIDATION: {}, OPTIMIZATION: {}, UPLOAD: {}}
        self._locks: Dict[str, _KeyLock] = {}
        self._hits = 0
        self._misses = 0

    async def get_or_compute(
        self, namespace: str, key: str, compute: Callable[[], Awaitable[T]]
    ) -> T:
        if namespace == UPLOAD:
            raise ValueError("Uploads are recorded with record_upload, not memoized")
        store = self._stores[namespace]
        if key in store:
            self._hits += 1
            return store[key]

        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                if key in store:
                    self._hits += 1
                    return store[key]
                self._misses += 1
                value = await compute()
                store[key] = value
                return value
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def get(self, namespace: str, key: str) -> Optional[Any]:
        return self._stores[namespace].get(key)

    def record_upload(self, record: UploadRecord) -> None:
        """Count a stored upload. Uploads are tracked, never served from the cache."""
        self._stores[UPLOAD][record.record_id] = record

    def forget_upload(self, record_id: str) -> None:
        self._stores[UPLOAD].pop(record_id, None)

    def clear(self) -> None:
        for store in self._stores.values():
            store.clear()
        self._hits = 0
        self._misses = 0

    def stats(self) -> CacheStats:
        return CacheStats(
            validation_count=len(self._stores[VALIDATION]),
            optimization_count=len(self._stores[OPTIMIZATION]),
            upload_count=len(self._stores[UPLOAD]),
            hits=self._hits,
            misses=self._misses,
        )
