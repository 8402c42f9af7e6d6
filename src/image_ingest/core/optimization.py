"""Optimizer: resize, filter, re-encode and target-size search for admitted files."""

import math
import time
from typing import Callable, List, Optional, Sequence, Tuple

from PIL import Image

from .codec import PillowImageCodec
from .exceptions import OptimizationError, with_error_handling
from .image_utils import (
    fit_within,
    format_file_size,
    has_exif,
    reduce_noise,
    sharpen,
    step_down_schedule,
)
from .models import (
    FORMAT_MEDIA_TYPES,
    KB,
    MEDIA_TYPE_FORMATS,
    Dimensions,
    OptimizationOptions,
    OptimizationResult,
    SourceFile,
)
from .observability import LogContext, StructuredLogger
from .protocols import ImageCodec, LoggerProtocol

SMALL_PNG_BYTES = 500 * KB
TARGET_SIZE_MAX_ATTEMPTS = 10
TARGET_SIZE_QUALITY_STEP = 0.9
TARGET_SIZE_QUALITY_FLOOR = 0.1
FALLBACK_QUALITY = 0.85

ProgressCallback = Callable[[float, str], None]


def source_format(source: SourceFile) -> str:
    return MEDIA_TYPE_FORMATS.get(source.media_type, "jpeg")


class ImageOptimizationService:
    """
    Runs the optimization stages in order: format decision, dimension
    decision, step-down resize, enhancement filters, compression and the
    optional target-size search.

    Output is deterministic for identical bytes and options. Failures are
    raised as ``OptimizationError``; there is no partial result.
    """

    def __init__(
        self,
        codec: Optional[ImageCodec] = None,
        logger: Optional[LoggerProtocol] = None,
    ):
        self._codec = codec or PillowImageCodec()
        self._logger = logger or StructuredLogger("image-ingest.optimization")

    def determine_format(self, source: SourceFile, options: OptimizationOptions) -> str:
        if options.format != "auto":
            return options.format

        # Small PNGs are likely to rely on transparency
        if source_format(source) == "png" and source.size < SMALL_PNG_BYTES:
            return "png"

        if self._codec.supports_encoding("webp"):
            return "webp"

        return "jpeg"

    def resize(self, buffer: Image.Image, target: Dimensions) -> Image.Image:
        """Resample to ``target``, stepping down through halvings for large reductions."""
        current = Dimensions(width=buffer.width, height=buffer.height)
        if current == target:
            return buffer

        if target.width > current.width or target.height > current.height:
            return self._codec.resize(buffer, target.width, target.height)

        for step in step_down_schedule(current, target):
            buffer = self._codec.resize(buffer, step.width, step.height)
        return buffer

    @with_error_handling(OptimizationError)
    def optimize(
        self, source: SourceFile, options: Optional[OptimizationOptions] = None
    ) -> OptimizationResult:
        opts = options or OptimizationOptions()
        started = time.perf_counter()
        applied: List[str] = []
        log_context = LogContext(
            operation="optimize", component="image_optimization_service"
        ).with_metadata(file=source.name, size=source.size)

        try:
            image = self._codec.decode(source.content)
        except Exception as exc:  # noqa: BLE001
            raise OptimizationError(f"Failed to decode {source.name}: {exc}") from exc

        original = Dimensions(width=image.width, height=image.height)

        target_format = self.determine_format(source, opts)
        if target_format != source_format(source):
            applied.append(f"Format conversion: {source_format(source)} → {target_format}")

        target = fit_within(original, opts.max_width, opts.max_height, opts.maintain_aspect_ratio)
        if target != original:
            applied.append(f"Resize: {original.width}x{original.height} → {target.width}x{target.height}")
            image = self.resize(image, target)

        if opts.enable_sharpening:
            image = sharpen(image)
            applied.append("Sharpening applied")
        if opts.enable_noise_reduction:
            image = reduce_noise(image)
            applied.append("Noise reduction applied")

        exif = None if opts.strip_exif else self._codec.read_exif(source.content)
        data = self._encode(image, target_format, opts.quality, opts, exif)

        if opts.target_file_size > 0 and len(data) > opts.target_file_size:
            data, image, notes = self._search_target_size(image, target_format, opts, exif)
            applied.extend(notes)

        if opts.strip_exif and has_exif(source.content):
            applied.append("EXIF data removed")

        output = SourceFile(
            name=f"{source.stem}.{'jpg' if target_format == 'jpeg' else target_format}",
            content=data,
            media_type=FORMAT_MEDIA_TYPES[target_format],
            last_modified=source.last_modified,
        )
        elapsed_ms = (time.perf_counter() - started) * 1000

        result = OptimizationResult(
            output_file=output,
            original_bytes=source.size,
            output_bytes=output.size,
            output_format=target_format,
            output_dimensions=Dimensions(width=image.width, height=image.height),
            elapsed_ms=elapsed_ms,
            applied_optimizations=applied,
        )
        self._logger.debug(
            "Optimization finished",
            log_context,
            output_bytes=result.output_bytes,
            ratio=f"{result.compression_ratio:.2f}",
            elapsed_ms=f"{elapsed_ms:.1f}",
        )
        return result

    def optimize_many(
        self,
        files: Sequence[SourceFile],
        options: Optional[OptimizationOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[OptimizationResult]:
        """
        Optimize files one after another.

        A file that fails keeps its original bytes and gets a single
        ``Failed: <reason>`` entry in ``applied_optimizations``.
        """
        results: List[OptimizationResult] = []
        for index, source in enumerate(files):
            if on_progress:
                on_progress(index / len(files), source.name)
            try:
                results.append(self.optimize(source, options))
            except OptimizationError as exc:
                self._logger.warning(f"Keeping original {source.name}: {exc}")
                results.append(
                    OptimizationResult(
                        output_file=source,
                        original_bytes=source.size,
                        output_bytes=source.size,
                        output_format=source_format(source),
                        output_dimensions=Dimensions(width=1, height=1),
                        applied_optimizations=[f"Failed: {exc}"],
                    )
                )
        if on_progress:
            on_progress(1.0, "Complete")
        return results

    def _encode(
        self,
        image: Image.Image,
        target_format: str,
        quality: float,
        opts: OptimizationOptions,
        exif: Optional[bytes],
    ) -> bytes:
        try:
            return self._codec.encode(
                image,
                target_format,
                quality,
                progressive=opts.progressive,
                lossless=opts.lossless,
                exif=exif,
            )
        except Exception as exc:  # noqa: BLE001
            raise OptimizationError(f"Failed to encode {target_format}: {exc}") from exc

    def _search_target_size(
        self,
        image: Image.Image,
        target_format: str,
        opts: OptimizationOptions,
        exif: Optional[bytes],
    ) -> Tuple[bytes, Image.Image, List[str]]:
        """
        Lower quality by 10% per attempt until the output fits. When the
        attempts or the quality floor run out, shrink the pixels by
        sqrt(target / current) and encode once more at a fixed quality.
        """
        target_size = opts.target_file_size
        quality = opts.quality
        attempts = 0

        while True:
            data = self._encode(image, target_format, quality, opts, exif)
            attempts += 1
            if len(data) <= target_size:
                return data, image, [
                    f"Optimized to target size: {format_file_size(target_size)} "
                    f"(quality {quality:.2f} after {attempts} attempts)"
                ]
            if attempts >= TARGET_SIZE_MAX_ATTEMPTS:
                break
            quality *= TARGET_SIZE_QUALITY_STEP
            if quality < TARGET_SIZE_QUALITY_FLOOR:
                break

        notes = [
            f"Target size {format_file_size(target_size)} not reached after {attempts} "
            f"attempts (quality {quality:.2f})"
        ]
        scale = math.sqrt(target_size / len(data))
        reduced = Dimensions(
            width=max(1, int(image.width * scale)),
            height=max(1, int(image.height * scale)),
        )
        image = self.resize(image, reduced)
        data = self._encode(image, target_format, FALLBACK_QUALITY, opts, exif)
        notes.append(f"Target size fallback: resized to {reduced} at quality {FALLBACK_QUALITY}")
        if len(data) > target_size:
            notes.append(
                f"Target size fallback exhausted: output is {format_file_size(len(data))}"
            )
        return data, image, notes
