"""Shared data models for the image ingestion pipeline."""

from __future__ import annotations

import mimetypes
import os
from enum import Enum
from pathlib import Path
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

KB = 1024
MB = 1024 * 1024

EXTENSION_MEDIA_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "heic": "image/heic",
}

MEDIA_TYPE_FORMATS = {
    "image/jpeg": "jpeg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
}

FORMAT_MEDIA_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

OutputFormat = Literal["auto", "jpeg", "png", "webp"]


class Dimensions(BaseModel):
    """Pixel size of an image."""

    model_config = ConfigDict(frozen=True)

    width: int = Field(gt=0)
    height: int = Field(gt=0)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


class SourceFile(BaseModel):
    """An immutable input file: raw bytes plus what the caller declared about them."""

    model_config = ConfigDict(frozen=True)

    name: str
    content: bytes = Field(repr=False, exclude=True)
    media_type: str
    last_modified: float = 0.0

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        _, _, ext = self.name.rpartition(".")
        return ext.lower() if ext != self.name else ""

    @property
    def stem(self) -> str:
        return self.name.rsplit(".", 1)[0] if "." in self.name else self.name

    @property
    def fingerprint(self) -> str:
        """Content-derived key: name, size and modification time."""
        return f"{self.name}-{self.size}-{self.last_modified}"

    @classmethod
    def from_path(cls, path: Union[str, Path], media_type: Optional[str] = None) -> "SourceFile":
        """Read a local file, guessing the media type from its extension."""
        file_path = Path(path)
        if media_type is None:
            ext = file_path.suffix.lower().lstrip(".")
            media_type = (
                EXTENSION_MEDIA_TYPES.get(ext)
                or mimetypes.guess_type(file_path.name)[0]
                or "application/octet-stream"
            )
        return cls(
            name=file_path.name,
            content=file_path.read_bytes(),
            media_type=media_type,
            last_modified=os.path.getmtime(file_path),
        )


# --- Options -----------------------------------------------------------------


class AspectRatioRange(BaseModel):
    """Inclusive width/height ratio bounds."""

    min: float = Field(default=0.2, gt=0)
    max: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "AspectRatioRange":
        if self.min > self.max:
            raise ValueError(f"min ratio {self.min} is greater than max ratio {self.max}")
        return self


class ValidationOptions(BaseModel):
    """Limits applied by the validator."""

    max_file_size: int = Field(default=10 * MB, gt=0)
    max_dimensions: Dimensions = Dimensions(width=4096, height=4096)
    min_dimensions: Dimensions = Dimensions(width=100, height=100)
    allowed_types: List[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/webp", "image/heic"]
    )
    allowed_aspect_ratios: AspectRatioRange = Field(default_factory=AspectRatioRange)
    check_for_malware: bool = True


class OptimizationOptions(BaseModel):
    """Targets for the optimizer."""

    max_width: int = Field(default=1920, gt=0)
    max_height: int = Field(default=1080, gt=0)
    quality: float = Field(default=0.85, gt=0, le=1)
    format: OutputFormat = "auto"
    maintain_aspect_ratio: bool = True
    strip_exif: bool = True
    progressive: bool = True
    lossless: bool = False
    target_file_size: int = Field(default=0, ge=0)
    enable_sharpening: bool = False
    enable_noise_reduction: bool = False


class ThumbnailSize(BaseModel):
    """A thumbnail bounding box and the suffix used in its file name."""

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    suffix: str

    @property
    def label(self) -> str:
        return f"{self.width}x{self.height}"


def _default_thumbnail_sizes() -> List[ThumbnailSize]:
    return [
        ThumbnailSize(width=150, height=150, suffix="thumb"),
        ThumbnailSize(width=400, height=300, suffix="small"),
        ThumbnailSize(width=800, height=600, suffix="medium"),
    ]


class UploadOptions(BaseModel):
    """Where and how processed files are stored."""

    bucket: str = "property-images"
    folder: str = ""
    generate_thumbnails: bool = True
    thumbnail_sizes: List[ThumbnailSize] = Field(default_factory=_default_thumbnail_sizes)
    retry_delay: float = Field(default=1.0, ge=0)


class BatchOptions(BaseModel):
    """Batch execution settings."""

    enable_parallel_processing: bool = True
    max_concurrent_uploads: int = Field(default=3, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    enable_caching: bool = True


class ProcessingOptions(BaseModel):
    """All option groups for one pipeline call."""

    validation: ValidationOptions = Field(default_factory=ValidationOptions)
    optimization: OptimizationOptions = Field(default_factory=OptimizationOptions)
    upload: UploadOptions = Field(default_factory=UploadOptions)
    batch: BatchOptions = Field(default_factory=BatchOptions)


class UploadContext(BaseModel):
    """Who and what an upload belongs to."""

    model_config = ConfigDict(frozen=True)

    property_id: Optional[str] = None
    agent_id: Optional[str] = None


# --- Validation --------------------------------------------------------------


class ErrorKind(str, Enum):
    """Reasons a file is rejected."""

    FILE_TOO_LARGE = "file_too_large"
    UNSUPPORTED_TYPE = "unsupported_type"
    DECODE_FAILED = "decode_failed"
    BELOW_MIN_DIMENSIONS = "below_min_dimensions"
    ABOVE_MAX_DIMENSIONS = "above_max_dimensions"
    ASPECT_RATIO_OUT_OF_RANGE = "aspect_ratio_out_of_range"
    SIGNATURE_MISMATCH = "signature_mismatch"


class WarningKind(str, Enum):
    """Advisory findings that never block admission."""

    EXTENSION_MISMATCH = "extension_mismatch"
    OVERSIZED_FOR_WEB = "oversized_for_web"
    UNUSUAL_ASPECT_RATIO = "unusual_aspect_ratio"
    SUSPICIOUSLY_SMALL = "suspiciously_small"
    SUSPICIOUS_CONTENT = "suspicious_content"
    SECURITY_CHECK_INCOMPLETE = "security_check_incomplete"


class ValidationIssue(BaseModel):
    """One error or warning raised by a validation check."""

    model_config = ConfigDict(frozen=True)

    code: Union[ErrorKind, WarningKind]
    message: str


class ImageLayout(str, Enum):
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"
    SQUARE = "square"


class ImageMetadata(BaseModel):
    """Facts derived once per source file."""

    model_config = ConfigDict(frozen=True)

    width: int
    height: int
    aspect_ratio: float
    file_size: int
    media_type: str
    has_exif: bool = False
    orientation: int = 1
    layout: ImageLayout
    decoded_format: Optional[str] = None

    @property
    def dimensions(self) -> Dimensions:
        return Dimensions(width=self.width, height=self.height)


class ValidationResult(BaseModel):
    """Outcome of validating one file."""

    model_config = ConfigDict(frozen=True)

    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    metadata: Optional[ImageMetadata] = None
    suggestions: List[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def admitted(self) -> bool:
        return not self.errors

    @property
    def error_messages(self) -> List[str]:
        return [issue.message for issue in self.errors]

    @property
    def warning_messages(self) -> List[str]:
        return [issue.message for issue in self.warnings]


# --- Optimization ------------------------------------------------------------


class OptimizationResult(BaseModel):
    """The transformed file and what was done to it."""

    model_config = ConfigDict(frozen=True)

    output_file: SourceFile
    original_bytes: int
    output_bytes: int
    output_format: str
    output_dimensions: Dimensions
    elapsed_ms: float = 0.0
    applied_optimizations: List[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def compression_ratio(self) -> float:
        """Fraction of bytes saved; negative when re-encoding grew the file."""
        if self.original_bytes <= 0:
            return 0.0
        return (self.original_bytes - self.output_bytes) / self.original_bytes


# --- Upload ------------------------------------------------------------------


class ThumbnailRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    size_label: str
    url: str
    path: str


class UploadRecord(BaseModel):
    """A stored file and its metadata record."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    remote_url: str
    storage_path: str
    thumbnails: List[ThumbnailRecord] = Field(default_factory=list)
    is_primary: bool = False
    display_order: int = 0
    alt_text: Optional[str] = None


# --- Orchestration -----------------------------------------------------------


class ProcessingStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ProcessingStage(str, Enum):
    """Per-file stages plus the batch-level ``COMPLETE`` marker."""

    PENDING = "pending"
    VALIDATING = "validating"
    OPTIMIZING = "optimizing"
    UPLOADING = "uploading"
    DONE = "done"
    COMPLETE = "complete"


class ProcessingSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    processing_time_ms: float
    original_bytes: int
    final_bytes: int
    original_dimensions: Optional[Dimensions] = None
    final_dimensions: Optional[Dimensions] = None
    original_format: str
    final_format: str


class ProcessingResult(BaseModel):
    """Terminal state of one file's trip through the pipeline."""

    model_config = ConfigDict(frozen=True)

    file: SourceFile
    original_file: SourceFile
    validation: ValidationResult
    optimization: Optional[OptimizationResult] = None
    upload: Optional[UploadRecord] = None
    summary: ProcessingSummary
    status: ProcessingStatus
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is not ProcessingStatus.ERROR

    @classmethod
    def failure(
        cls,
        source: SourceFile,
        errors: List[str],
        validation: Optional[ValidationResult] = None,
        warnings: Optional[List[str]] = None,
        processing_time_ms: float = 0.0,
    ) -> "ProcessingResult":
        """Error result that keeps the original file untouched."""
        source_format = MEDIA_TYPE_FORMATS.get(source.media_type, "unknown")
        metadata = validation.metadata if validation is not None else None
        return cls(
            file=source,
            original_file=source,
            validation=validation or ValidationResult(),
            summary=ProcessingSummary(
                processing_time_ms=processing_time_ms,
                original_bytes=source.size,
                final_bytes=source.size,
                original_dimensions=metadata.dimensions if metadata else None,
                final_dimensions=metadata.dimensions if metadata else None,
                original_format=source_format,
                final_format=source_format,
            ),
            status=ProcessingStatus.ERROR,
            errors=errors,
            warnings=warnings or [],
        )


class BatchProgress(BaseModel):
    """Snapshot of a batch run, recomputed on every stage transition."""

    model_config = ConfigDict(frozen=True)

    total: int
    completed: int = 0
    failed: int = 0
    in_flight: int = 0
    current_file: str = ""
    stage: ProcessingStage = ProcessingStage.PENDING
    fraction_done: float = 0.0
    eta_ms: float = 0.0
    throughput_per_sec: float = 0.0


class CacheStats(BaseModel):
    validation_count: int = 0
    optimization_count: int = 0
    upload_count: int = 0
    hits: int = 0
    misses: int = 0
