"""Validator: decides whether a candidate file is admitted, rejected or admitted with warnings."""

import threading
from typing import Dict, List, Optional, Sequence, Tuple

from .codec import PillowImageCodec
from .image_utils import (
    EXIF_SCAN_LIMIT,
    classify_layout,
    contains_suspicious_content,
    format_file_size,
    has_exif,
    matches_signature,
    read_orientation,
)
from .models import (
    EXTENSION_MEDIA_TYPES,
    MB,
    Dimensions,
    ErrorKind,
    ImageMetadata,
    SourceFile,
    ValidationIssue,
    ValidationOptions,
    ValidationResult,
    WarningKind,
)
from .observability import LogContext, StructuredLogger
from .protocols import ImageCodec, LoggerProtocol

WEB_OPTIMAL = Dimensions(width=1920, height=1080)

COMMON_ASPECT_RATIOS: Sequence[Tuple[float, str]] = (
    (16 / 9, "16:9 (widescreen)"),
    (4 / 3, "4:3 (standard)"),
    (3 / 2, "3:2 (photography)"),
    (1.0, "1:1 (square)"),
)
ASPECT_RATIO_TOLERANCE = 0.1

HEADER_LENGTH = 16
CONTENT_SAMPLE_LENGTH = 1024
SUSPICIOUSLY_SMALL_BYTES = 100

Issues = Tuple[List[ValidationIssue], List[ValidationIssue]]


class ImageValidationService:
    """
    Runs the validation checks in order: basic properties, metadata
    extraction, dimensions, aspect ratio, security and suggestions.

    Only the basic checks and metadata extraction short-circuit; every other
    check reports all of its findings. The file itself is never modified.
    Metadata is cached per file fingerprint for the lifetime of the service.
    """

    def __init__(
        self,
        codec: Optional[ImageCodec] = None,
        logger: Optional[LoggerProtocol] = None,
    ):
        self._codec = codec or PillowImageCodec()
        self._logger = logger or StructuredLogger("image-ingest.validation")
        self._metadata_cache: Dict[str, ImageMetadata] = {}
        self._metadata_lock = threading.Lock()

    def validate(
        self, source: SourceFile, options: Optional[ValidationOptions] = None
    ) -> ValidationResult:
        opts = options or ValidationOptions()
        log_context = LogContext(
            operation="validate", component="image_validation_service"
        ).with_metadata(file=source.name, size=source.size)

        errors, warnings = self._check_basic_properties(source, opts)
        if errors:
            self._logger.info("File rejected by basic checks", log_context, errors=len(errors))
            return ValidationResult(errors=errors, warnings=warnings)

        try:
            metadata = self.extract_metadata(source)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(f"Metadata extraction failed: {exc}", log_context)
            errors.append(
                ValidationIssue(
                    code=ErrorKind.DECODE_FAILED,
                    message=f"Failed to validate image: {exc}",
                )
            )
            return ValidationResult(errors=errors, warnings=warnings)

        for check in (self._check_dimensions, self._check_aspect_ratio):
            check_errors, check_warnings = check(metadata, opts)
            errors.extend(check_errors)
            warnings.extend(check_warnings)

        if opts.check_for_malware:
            check_errors, check_warnings = self._check_security(source)
            errors.extend(check_errors)
            warnings.extend(check_warnings)

        result = ValidationResult(
            errors=errors,
            warnings=warnings,
            metadata=metadata,
            suggestions=self.suggest_optimizations(metadata),
        )
        self._logger.debug(
            "Validation finished",
            log_context,
            admitted=result.admitted,
            errors=len(errors),
            warnings=len(warnings),
        )
        return result

    def validate_many(
        self, files: Sequence[SourceFile], options: Optional[ValidationOptions] = None
    ) -> List[ValidationResult]:
        return [self.validate(source, options) for source in files]

    def extract_metadata(self, source: SourceFile) -> ImageMetadata:
        """Decode the header of ``source``; cached by fingerprint."""
        with self._metadata_lock:
            cached = self._metadata_cache.get(source.fingerprint)
        if cached is not None:
            return cached

        dimensions, decoded_format = self._codec.probe(source.content)
        exif_present = has_exif(source.content, EXIF_SCAN_LIMIT)
        metadata = ImageMetadata(
            width=dimensions.width,
            height=dimensions.height,
            aspect_ratio=dimensions.width / dimensions.height,
            file_size=source.size,
            media_type=source.media_type,
            has_exif=exif_present,
            orientation=read_orientation(source.content) if exif_present else 1,
            layout=classify_layout(dimensions.width, dimensions.height),
            decoded_format=decoded_format,
        )

        with self._metadata_lock:
            return self._metadata_cache.setdefault(source.fingerprint, metadata)

    def _check_basic_properties(self, source: SourceFile, opts: ValidationOptions) -> Issues:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if source.size > opts.max_file_size:
            errors.append(
                ValidationIssue(
                    code=ErrorKind.FILE_TOO_LARGE,
                    message=(
                        f"File size ({format_file_size(source.size)}) exceeds maximum "
                        f"allowed size ({format_file_size(opts.max_file_size)})"
                    ),
                )
            )

        if source.media_type not in opts.allowed_types:
            errors.append(
                ValidationIssue(
                    code=ErrorKind.UNSUPPORTED_TYPE,
                    message=(
                        f"File type '{source.media_type}' is not allowed. "
                        f"Supported types: {', '.join(opts.allowed_types)}"
                    ),
                )
            )

        expected_type = EXTENSION_MEDIA_TYPES.get(source.extension)
        if expected_type and expected_type != source.media_type:
            warnings.append(
                ValidationIssue(
                    code=WarningKind.EXTENSION_MISMATCH,
                    message=(
                        f"File extension '{source.extension}' doesn't match "
                        f"MIME type '{source.media_type}'"
                    ),
                )
            )

        return errors, warnings

    def _check_dimensions(self, metadata: ImageMetadata, opts: ValidationOptions) -> Issues:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        size = f"{metadata.width}x{metadata.height}"

        if metadata.width < opts.min_dimensions.width or metadata.height < opts.min_dimensions.height:
            errors.append(
                ValidationIssue(
                    code=ErrorKind.BELOW_MIN_DIMENSIONS,
                    message=(
                        f"Image dimensions ({size}) are below minimum required "
                        f"({opts.min_dimensions})"
                    ),
                )
            )

        if metadata.width > opts.max_dimensions.width or metadata.height > opts.max_dimensions.height:
            errors.append(
                ValidationIssue(
                    code=ErrorKind.ABOVE_MAX_DIMENSIONS,
                    message=(
                        f"Image dimensions ({size}) exceed maximum allowed "
                        f"({opts.max_dimensions})"
                    ),
                )
            )

        if metadata.width > WEB_OPTIMAL.width * 2 or metadata.height > WEB_OPTIMAL.height * 2:
            warnings.append(
                ValidationIssue(
                    code=WarningKind.OVERSIZED_FOR_WEB,
                    message=(
                        f"Image is very large ({size}). "
                        "Consider resizing for better performance."
                    ),
                )
            )

        return errors, warnings

    def _check_aspect_ratio(self, metadata: ImageMetadata, opts: ValidationOptions) -> Issues:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        ratio = metadata.aspect_ratio
        bounds = opts.allowed_aspect_ratios

        if ratio < bounds.min or ratio > bounds.max:
            errors.append(
                ValidationIssue(
                    code=ErrorKind.ASPECT_RATIO_OUT_OF_RANGE,
                    message=(
                        f"Image aspect ratio ({ratio:.2f}) is outside allowed range "
                        f"({bounds.min}-{bounds.max})"
                    ),
                )
            )

        if not any(abs(ratio - common) < ASPECT_RATIO_TOLERANCE for common, _ in COMMON_ASPECT_RATIOS):
            warnings.append(
                ValidationIssue(
                    code=WarningKind.UNUSUAL_ASPECT_RATIO,
                    message=(
                        f"Unusual aspect ratio ({ratio:.2f}). "
                        "Consider using standard ratios for better display."
                    ),
                )
            )

        return errors, warnings

    def _check_security(self, source: SourceFile) -> Issues:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        try:
            header = source.content[:HEADER_LENGTH]
            if not matches_signature(header, source.media_type):
                errors.append(
                    ValidationIssue(
                        code=ErrorKind.SIGNATURE_MISMATCH,
                        message=(
                            "File header does not match expected image format. "
                            "Possible spoofed content."
                        ),
                    )
                )

            if source.size < SUSPICIOUSLY_SMALL_BYTES:
                warnings.append(
                    ValidationIssue(
                        code=WarningKind.SUSPICIOUSLY_SMALL,
                        message="File is unusually small for an image",
                    )
                )

            sample = source.content[:CONTENT_SAMPLE_LENGTH].decode("utf-8", errors="replace")
            if contains_suspicious_content(sample):
                warnings.append(
                    ValidationIssue(
                        code=WarningKind.SUSPICIOUS_CONTENT,
                        message="File may contain embedded content. Please verify source.",
                    )
                )
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(f"Security scan failed for {source.name}: {exc}")
            warnings.append(
                ValidationIssue(
                    code=WarningKind.SECURITY_CHECK_INCOMPLETE,
                    message="Could not perform complete security validation",
                )
            )

        return errors, warnings

    @staticmethod
    def suggest_optimizations(metadata: ImageMetadata) -> List[str]:
        suggestions: List[str] = []

        if metadata.file_size > 2 * MB:
            suggestions.append("Consider compressing the image to reduce file size")

        if metadata.media_type == "image/png" and metadata.file_size > 1 * MB:
            suggestions.append("Consider converting PNG to JPEG or WebP for better compression")

        if metadata.width > WEB_OPTIMAL.width or metadata.height > WEB_OPTIMAL.height:
            suggestions.append(
                f"Consider resizing to web-optimal dimensions (max {WEB_OPTIMAL})"
            )

        if metadata.has_exif:
            suggestions.append(
                "Consider removing EXIF data to reduce file size and protect privacy"
            )

        if metadata.media_type == "image/jpeg" and metadata.width > 1000:
            suggestions.append("Consider using WebP format for better compression and quality")

        return suggestions
