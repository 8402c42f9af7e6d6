"""Uploader: stores processed files, records them, and fans out thumbnails."""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .error_handling import call_with_retry
from .exceptions import (
    ConsistencyError,
    ImageIngestError,
    UploadCancelledError,
    UploadError,
    with_error_handling,
)
from .models import (
    OptimizationOptions,
    SourceFile,
    ThumbnailRecord,
    ThumbnailSize,
    UploadContext,
    UploadOptions,
    UploadRecord,
)
from .observability import LogContext, StructuredLogger
from .optimization import ImageOptimizationService
from .protocols import BlobStore, LoggerProtocol, MetadataStore

THUMBNAIL_QUALITY = 0.8
UNASSIGNED_PROPERTY = "unassigned"


def _join_path(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part and part.strip("/"))


def unique_name() -> str:
    """``<ms timestamp>-<9 hex>``, the base name of every stored object."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class UploadService:
    """
    Writes a file to the blob store and then creates its metadata record.

    The two writes are linked: if the record cannot be created, the blob is
    removed again before the error is raised. Every in-flight upload is
    tracked by id so it can be cancelled individually or all at once.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        optimizer: Optional[ImageOptimizationService] = None,
        logger: Optional[LoggerProtocol] = None,
    ):
        self._blob_store = blob_store
        self._metadata_store = metadata_store
        self._optimizer = optimizer or ImageOptimizationService()
        self._logger = logger or StructuredLogger("image-ingest.upload")
        self._active_uploads: Dict[str, "asyncio.Task[UploadRecord]"] = {}

    @property
    def active_uploads(self) -> List[str]:
        return list(self._active_uploads)

    @staticmethod
    def build_storage_path(
        source: SourceFile, options: UploadOptions, context: UploadContext
    ) -> str:
        """``<folder>/<property id>/<timestamp>-<random>.<ext>``"""
        ext = source.extension or "jpg"
        return _join_path(
            options.folder,
            context.property_id or UNASSIGNED_PROPERTY,
            f"{unique_name()}.{ext}",
        )

    @staticmethod
    def build_thumbnail_path(
        base_name: str, options: UploadOptions, context: UploadContext, size: ThumbnailSize
    ) -> str:
        """``<folder>/thumbnails/<property id>/<base name>_<suffix>.jpg``"""
        return _join_path(
            options.folder,
            "thumbnails",
            context.property_id or UNASSIGNED_PROPERTY,
            f"{base_name}_{size.suffix}.jpg",
        )

    async def upload(
        self,
        source: SourceFile,
        options: Optional[UploadOptions] = None,
        context: Optional[UploadContext] = None,
        upload_id: Optional[str] = None,
    ) -> UploadRecord:
        """
        Run a single upload attempt.

        Raises:
            UploadError: The blob write failed.
            ConsistencyError: The record write failed; the blob was rolled back.
            UploadCancelledError: The upload was cancelled through the registry.
        """
        opts = options or UploadOptions()
        ctx = context or UploadContext()
        key = upload_id or uuid.uuid4().hex

        task = asyncio.ensure_future(self._store_and_record(source, opts, ctx))
        self._active_uploads[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            self._logger.info(f"Upload of {source.name} cancelled")
            raise UploadCancelledError(f"Upload cancelled: {source.name}") from None
        finally:
            if self._active_uploads.get(key) is task:
                del self._active_uploads[key]

    async def upload_with_retry(
        self,
        source: SourceFile,
        options: Optional[UploadOptions] = None,
        context: Optional[UploadContext] = None,
        max_attempts: int = 3,
        upload_id: Optional[str] = None,
    ) -> UploadRecord:
        """Retry ``upload`` with exponential backoff starting at ``options.retry_delay``."""
        opts = options or UploadOptions()
        key = upload_id or uuid.uuid4().hex
        return await call_with_retry(
            lambda: self.upload(source, opts, context, key),
            max_attempts=max_attempts,
            initial_delay=opts.retry_delay,
            operation_name="upload",
        )

    def cancel_upload(self, upload_id: str) -> bool:
        task = self._active_uploads.pop(upload_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        tasks = list(self._active_uploads.values())
        self._active_uploads.clear()
        for task in tasks:
            task.cancel()
        return len(tasks)

    async def upload_thumbnails(
        self,
        source: SourceFile,
        options: Optional[UploadOptions] = None,
        context: Optional[UploadContext] = None,
        base_name: Optional[str] = None,
    ) -> Tuple[List[ThumbnailRecord], List[str]]:
        """
        Render and store one thumbnail per configured size.

        ``base_name`` ties the thumbnails to their parent object, usually the
        stem of its storage path; a fresh unique name is used when omitted.
        A failing size is logged and skipped; its message is returned in
        the second element so the caller can surface it as a warning.
        """
        opts = options or UploadOptions()
        ctx = context or UploadContext()
        base = base_name or unique_name()
        thumbnails: List[ThumbnailRecord] = []
        failures: List[str] = []

        for size in opts.thumbnail_sizes:
            path = self.build_thumbnail_path(base, opts, ctx, size)
            try:
                rendered = await asyncio.to_thread(
                    self._optimizer.optimize,
                    source,
                    OptimizationOptions(
                        max_width=size.width,
                        max_height=size.height,
                        quality=THUMBNAIL_QUALITY,
                        format="jpeg",
                    ),
                )
                output = rendered.output_file
                url = await self._blob_store.put(opts.bucket, path, output.content, output.media_type)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(f"Thumbnail {size.suffix} failed for {source.name}: {exc}")
                failures.append(f"Thumbnail {size.suffix} ({size.label}) failed: {exc}")
                continue
            thumbnails.append(ThumbnailRecord(size_label=size.label, url=url, path=path))

        return thumbnails, failures

    @with_error_handling(UploadError)
    async def update_image_metadata(
        self,
        record_id: str,
        is_primary: Optional[bool] = None,
        display_order: Optional[int] = None,
        alt_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if is_primary is not None:
            changes["is_primary"] = is_primary
        if display_order is not None:
            changes["display_order"] = display_order
        if alt_text is not None:
            changes["alt_text"] = alt_text
        return await self._metadata_store.update(record_id, changes)

    @with_error_handling(UploadError)
    async def delete_image(self, record_id: str, bucket: Optional[str] = None) -> bool:
        """Remove the stored blob, then the record. False if the record does not exist."""
        record = await self._metadata_store.get(record_id)
        if record is None:
            return False
        await self._blob_store.remove(bucket or UploadOptions().bucket, [record["storage_path"]])
        await self._metadata_store.delete(record_id)
        self._logger.info(f"Deleted image {record_id}")
        return True

    async def _store_and_record(
        self, source: SourceFile, opts: UploadOptions, ctx: UploadContext
    ) -> UploadRecord:
        path = self.build_storage_path(source, opts, ctx)
        log_context = LogContext(operation="upload", component="upload_service").with_metadata(
            file=source.name, path=path
        )

        stored = False
        try:
            url = await self._blob_store.put(opts.bucket, path, source.content, source.media_type)
            stored = True
            record = await self._metadata_store.insert(
                {
                    "property_id": ctx.property_id,
                    "agent_id": ctx.agent_id,
                    "image_url": url,
                    "storage_path": path,
                    "original_filename": source.name,
                    "file_size": source.size,
                    "mime_type": source.media_type,
                    "is_primary": False,
                    "display_order": 0,
                    "alt_text": None,
                }
            )
        except asyncio.CancelledError:
            # The put may have completed server side; removal is idempotent
            await self._rollback(opts.bucket, path, log_context)
            raise
        except Exception as exc:  # noqa: BLE001
            if not stored:
                if isinstance(exc, ImageIngestError):
                    raise
                raise UploadError(f"Storage upload failed: {exc}") from exc
            await self._rollback(opts.bucket, path, log_context)
            raise ConsistencyError(f"Database insert failed: {exc}") from exc

        self._logger.debug("Upload recorded", log_context, record_id=record["id"])
        return UploadRecord(
            record_id=str(record["id"]),
            remote_url=url,
            storage_path=path,
            is_primary=bool(record.get("is_primary", False)),
            display_order=int(record.get("display_order", 0)),
            alt_text=record.get("alt_text"),
        )

    async def _rollback(self, bucket: str, path: str, log_context: LogContext) -> None:
        try:
            await self._blob_store.remove(bucket, [path])
            self._logger.warning("Rolled back stored blob", log_context)
        except Exception as exc:  # noqa: BLE001
            self._logger.error(f"Rollback failed, blob may be orphaned: {exc}", log_context)
