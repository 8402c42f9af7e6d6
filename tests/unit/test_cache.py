"""Tests for ProcessingCache and cache keys."""

import asyncio

import pytest

from image_ingest.core.cache import OPTIMIZATION, UPLOAD, VALIDATION, ProcessingCache, cache_key
from image_ingest.core.models import OptimizationOptions, UploadContext, UploadRecord
from image_ingest.testing.fakes import make_source_file


def _record(record_id):
    return UploadRecord(record_id=record_id, remote_url="https://cdn/x.jpg", storage_path="x.jpg")


class TestCacheKey:
    """Tests for cache_key."""

    def test_key_depends_on_options(self):
        source = make_source_file("a.jpg")
        default = cache_key("optimize", source, OptimizationOptions())
        same = cache_key("optimize", source, OptimizationOptions())
        other = cache_key("optimize", source, OptimizationOptions(quality=0.5))

        assert default == same
        assert default != other
        assert default.startswith(f"optimize-{source.fingerprint}-")

    def test_key_depends_on_context(self):
        source = make_source_file("a.jpg")
        assert cache_key("upload", source, UploadContext(property_id="1")) != cache_key(
            "upload", source, UploadContext(property_id="2")
        )
        assert cache_key("upload", source, None) == cache_key("upload", source, None)


class TestProcessingCache:
    """Tests for ProcessingCache."""

    def test_concurrent_callers_compute_once(self):
        cache = ProcessingCache()
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "value"

        async def scenario():
            return await asyncio.gather(
                *(cache.get_or_compute(VALIDATION, "k", compute) for _ in range(5))
            )

        assert asyncio.run(scenario()) == ["value"] * 5
        assert len(calls) == 1
        stats = cache.stats()
        assert stats.validation_count == 1
        assert stats.misses == 1
        assert stats.hits == 4

    def test_failures_are_not_cached(self):
        cache = ProcessingCache()
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first call fails")
            return 42

        with pytest.raises(RuntimeError):
            asyncio.run(cache.get_or_compute(OPTIMIZATION, "k", flaky))
        assert cache.get(OPTIMIZATION, "k") is None

        assert asyncio.run(cache.get_or_compute(OPTIMIZATION, "k", flaky)) == 42
        assert len(attempts) == 2

    def test_namespaces_are_separate(self):
        cache = ProcessingCache()

        async def value():
            return "v"

        asyncio.run(cache.get_or_compute(VALIDATION, "k", value))
        cache.record_upload(_record("r1"))

        stats = cache.stats()
        assert (stats.validation_count, stats.optimization_count, stats.upload_count) == (1, 0, 1)

    def test_uploads_are_tallied_not_memoized(self):
        cache = ProcessingCache()

        async def value():
            return "v"

        with pytest.raises(ValueError):
            asyncio.run(cache.get_or_compute(UPLOAD, "k", value))

        cache.record_upload(_record("r1"))
        cache.record_upload(_record("r2"))
        cache.forget_upload("r1")
        cache.forget_upload("missing")

        assert cache.stats().upload_count == 1
        assert cache.get(UPLOAD, "r2").record_id == "r2"

    def test_clear(self):
        cache = ProcessingCache()

        async def value():
            return "v"

        asyncio.run(cache.get_or_compute(VALIDATION, "k", value))
        cache.clear()

        assert cache.get(VALIDATION, "k") is None
        assert cache.stats().model_dump() == {
            "validation_count": 0,
            "optimization_count": 0,
            "upload_count": 0,
            "hits": 0,
            "misses": 0,
        }
