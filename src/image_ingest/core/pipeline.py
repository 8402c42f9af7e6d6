"""Pipeline orchestrator: validate, optimize and upload files singly or in batches."""

import asyncio
import time
from pathlib import PurePosixPath
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

from ..processors import parallel_process_batch, sequential_process_batch
from ..processors.common import AbortSignal, ProgressListener, ProgressTracker
from .cache import OPTIMIZATION, VALIDATION, ProcessingCache, cache_key
from .error_handling import BatchOperationContextManager
from .exceptions import (
    ConsistencyError,
    OptimizationError,
    UploadError,
    ValidationError,
)
from .models import (
    MB,
    BatchProgress,
    CacheStats,
    OptimizationOptions,
    OptimizationResult,
    ProcessingOptions,
    ProcessingResult,
    ProcessingStage,
    ProcessingStatus,
    ProcessingSummary,
    SourceFile,
    UploadContext,
    UploadRecord,
    ValidationResult,
)
from .observability import LogContext, MetricsCollector, StructuredLogger
from .optimization import ImageOptimizationService, source_format
from .protocols import LoggerProtocol
from .upload import UploadService
from .validation import ImageValidationService

T = TypeVar("T")

OPTIMIZE_SIZE_THRESHOLD = 2 * MB

StageCallback = Callable[[ProcessingStage], None]
UploadOutcome = Tuple[UploadRecord, List[str]]


class ImageProcessingPipeline:
    """
    Runs each file through validate -> (optimize) -> upload and drives
    batches through the sequential or parallel executor.

    Validation and optimization results are memoized per file fingerprint
    and options for the lifetime of the instance, so retrying a failed
    batch does not validate or optimize again. Uploads always run.
    """

    def __init__(
        self,
        validator: ImageValidationService,
        optimizer: ImageOptimizationService,
        uploader: UploadService,
        cache: Optional[ProcessingCache] = None,
        logger: Optional[LoggerProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._validator = validator
        self._optimizer = optimizer
        self._uploader = uploader
        self._cache = cache or ProcessingCache()
        self._logger = logger or StructuredLogger("image-ingest.pipeline")
        self.metrics = metrics or MetricsCollector()
        self._listeners: List[ProgressListener] = []
        self._abort_signal = AbortSignal()
        self.last_progress: Optional[BatchProgress] = None

    # --- single file -------------------------------------------------------

    async def process_image(
        self,
        source: SourceFile,
        options: Optional[ProcessingOptions] = None,
        context: Optional[UploadContext] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> ProcessingResult:
        opts = options or ProcessingOptions()
        ctx = context or UploadContext()
        started = time.perf_counter()
        log_context = LogContext(
            operation="process_image", component="image_processing_pipeline"
        ).with_metadata(file=source.name)

        def notify(stage: ProcessingStage) -> None:
            self._logger.debug(f"Stage {stage.value}", log_context)
            if on_stage:
                on_stage(stage)

        def elapsed_ms() -> float:
            return (time.perf_counter() - started) * 1000

        validation: Optional[ValidationResult] = None
        try:
            notify(ProcessingStage.VALIDATING)
            validation = await self._validate(source, opts)
            if not validation.admitted:
                raise ValidationError(
                    f"{source.name} rejected: {'; '.join(validation.error_messages)}",
                    result=validation,
                )
            warnings = list(validation.warning_messages)

            current = source
            optimization: Optional[OptimizationResult] = None
            if self.should_optimize(source, validation, opts.optimization):
                notify(ProcessingStage.OPTIMIZING)
                optimization = await self._optimize(source, opts)
                current = optimization.output_file
            else:
                self._logger.debug("Optimization skipped", log_context)

            notify(ProcessingStage.UPLOADING)
            record, thumbnail_failures = await self._upload(current, opts, ctx)
            warnings.extend(thumbnail_failures)

        except ValidationError as exc:
            self._logger.info(f"Rejected: {exc}", log_context)
            return ProcessingResult.failure(
                source,
                validation.error_messages if validation else [str(exc)],
                validation=validation,
                warnings=validation.warning_messages if validation else [],
                processing_time_ms=elapsed_ms(),
            )
        except OptimizationError as exc:
            self._logger.error(f"Optimization failed, keeping original: {exc}", log_context)
            return ProcessingResult.failure(
                source,
                [f"Optimization failed: {exc}"],
                validation=validation,
                warnings=validation.warning_messages if validation else [],
                processing_time_ms=elapsed_ms(),
            )
        except (UploadError, ConsistencyError) as exc:
            self._logger.error(f"Upload failed: {exc}", log_context)
            return ProcessingResult.failure(
                source,
                [str(exc)],
                validation=validation,
                warnings=validation.warning_messages if validation else [],
                processing_time_ms=elapsed_ms(),
            )

        metadata = validation.metadata
        result = ProcessingResult(
            file=current,
            original_file=source,
            validation=validation,
            optimization=optimization,
            upload=record,
            summary=ProcessingSummary(
                processing_time_ms=elapsed_ms(),
                original_bytes=source.size,
                final_bytes=current.size,
                original_dimensions=metadata.dimensions if metadata else None,
                final_dimensions=(
                    optimization.output_dimensions
                    if optimization
                    else (metadata.dimensions if metadata else None)
                ),
                original_format=source_format(source),
                final_format=optimization.output_format if optimization else source_format(source),
            ),
            status=ProcessingStatus.WARNING if warnings else ProcessingStatus.SUCCESS,
            warnings=warnings,
        )
        self._logger.info(
            "Processed",
            log_context,
            status=result.status.value,
            bytes=f"{source.size}->{current.size}",
        )
        return result

    def should_optimize(
        self, source: SourceFile, validation: ValidationResult, options: OptimizationOptions
    ) -> bool:
        """
        Optimize when the file is large, oversized, in the wrong format or
        carries EXIF that should be stripped. Anything else is stored as is.
        """
        metadata = validation.metadata
        if source.size > OPTIMIZE_SIZE_THRESHOLD:
            return True
        if metadata and (metadata.width > options.max_width or metadata.height > options.max_height):
            return True
        if self._optimizer.determine_format(source, options) != source_format(source):
            return True
        return bool(options.strip_exif and metadata and metadata.has_exif)

    # --- batches -----------------------------------------------------------

    async def process_images(
        self,
        files: Sequence[SourceFile],
        options: Optional[ProcessingOptions] = None,
        context: Optional[UploadContext] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> List[ProcessingResult]:
        """
        Process a batch and return one result per file that was started,
        in submission order. A failing file never stops its siblings.
        """
        opts = options or ProcessingOptions()
        self._abort_signal.reset()
        listeners = list(self._listeners)
        if on_progress:
            listeners.append(on_progress)
        tracker = ProgressTracker(len(files), listeners, self._logger)

        async def process_file(source: SourceFile) -> ProcessingResult:
            return await self.process_image(
                source, opts, context, lambda stage: tracker.stage_changed(source, stage)
            )

        mode = "parallel" if opts.batch.enable_parallel_processing else "sequential"
        with BatchOperationContextManager(f"{mode} batch of {len(files)} image(s)") as batch:
            if opts.batch.enable_parallel_processing:
                results = await parallel_process_batch(
                    files,
                    process_file,
                    tracker,
                    self._abort_signal,
                    max_concurrent=opts.batch.max_concurrent_uploads,
                    logger=self._logger,
                )
            else:
                results = await sequential_process_batch(
                    files, process_file, tracker, self._abort_signal, logger=self._logger
                )
            for result in results:
                if result.status is ProcessingStatus.ERROR:
                    batch.add_error("; ".join(result.errors), result.original_file.name)

        self.last_progress = tracker.finish()
        return results

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def abort(self) -> None:
        """Stop dispatching files; files already in flight run to completion."""
        self._logger.info("Abort requested")
        self._abort_signal.abort()

    def cancel_uploads(self) -> int:
        return self._uploader.cancel_all()

    async def delete_image(self, record_id: str, bucket: Optional[str] = None) -> bool:
        deleted = await self._uploader.delete_image(record_id, bucket)
        self._cache.forget_upload(record_id)
        return deleted

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_cache_stats(self) -> CacheStats:
        return self._cache.stats()

    # --- stages ------------------------------------------------------------

    async def _memoized(
        self,
        enabled: bool,
        namespace: str,
        key: str,
        compute: Callable[[], Awaitable[T]],
    ) -> T:
        if not enabled:
            return await compute()
        return await self._cache.get_or_compute(namespace, key, compute)

    async def _validate(self, source: SourceFile, opts: ProcessingOptions) -> ValidationResult:
        with self.metrics.measure("validate", file=source.name):
            return await self._memoized(
                opts.batch.enable_caching,
                VALIDATION,
                cache_key("validate", source, opts.validation),
                lambda: asyncio.to_thread(self._validator.validate, source, opts.validation),
            )

    async def _optimize(self, source: SourceFile, opts: ProcessingOptions) -> OptimizationResult:
        with self.metrics.measure("optimize", file=source.name):
            return await self._memoized(
                opts.batch.enable_caching,
                OPTIMIZATION,
                cache_key("optimize", source, opts.optimization),
                lambda: asyncio.to_thread(self._optimizer.optimize, source, opts.optimization),
            )

    async def _upload(
        self, current: SourceFile, opts: ProcessingOptions, ctx: UploadContext
    ) -> UploadOutcome:
        with self.metrics.measure("upload", file=current.name):
            record = await self._uploader.upload_with_retry(
                current, opts.upload, ctx, max_attempts=opts.batch.retry_attempts
            )
            failures: List[str] = []
            if opts.upload.generate_thumbnails and opts.upload.thumbnail_sizes:
                thumbnails, failures = await self._uploader.upload_thumbnails(
                    current,
                    opts.upload,
                    ctx,
                    base_name=PurePosixPath(record.storage_path).stem,
                )
                record = record.model_copy(update={"thumbnails": thumbnails})
        self._cache.record_upload(record)
        return record, failures
