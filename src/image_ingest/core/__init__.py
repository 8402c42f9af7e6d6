"""Core models, errors and utilities shared by the image ingestion pipeline."""

from .exceptions import (
    ConfigurationError,
    ConsistencyError,
    ImageIngestError,
    OptimizationError,
    UploadCancelledError,
    UploadError,
    ValidationError,
    with_error_handling,
)
from .image_utils import fit_within, format_file_size, step_down_schedule
from .logging_config import get_logger, set_log_level, setup_logger
from .models import (
    BatchOptions,
    BatchProgress,
    Dimensions,
    OptimizationOptions,
    OptimizationResult,
    ProcessingOptions,
    ProcessingResult,
    ProcessingStatus,
    SourceFile,
    UploadContext,
    UploadOptions,
    UploadRecord,
    ValidationOptions,
    ValidationResult,
)

__all__ = [
    "BatchOptions",
    "BatchProgress",
    "Dimensions",
    "OptimizationOptions",
    "OptimizationResult",
    "ProcessingOptions",
    "ProcessingResult",
    "ProcessingStatus",
    "SourceFile",
    "UploadContext",
    "UploadOptions",
    "UploadRecord",
    "ValidationOptions",
    "ValidationResult",
    "fit_within",
    "format_file_size",
    "step_down_schedule",
    "setup_logger",
    "get_logger",
    "set_log_level",
    "ImageIngestError",
    "ValidationError",
    "OptimizationError",
    "UploadError",
    "UploadCancelledError",
    "ConsistencyError",
    "ConfigurationError",
    "with_error_handling",
]
