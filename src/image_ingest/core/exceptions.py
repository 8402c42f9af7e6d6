"""Custom exceptions and error handling utilities for the image ingestion pipeline."""

from __future__ import annotations

import inspect
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Optional, Type, TypeVar

from .logging_config import get_logger

if TYPE_CHECKING:
    from .models import ValidationResult


class ImageIngestError(Exception):
    """Base exception for all image ingestion errors."""


class ConfigurationError(ImageIngestError):
    """Error raised for invalid configuration options."""


class ValidationError(ImageIngestError):
    """Raised when a file is rejected by the validator."""

    def __init__(self, message: str, result: Optional["ValidationResult"] = None):
        super().__init__(message)
        self.result = result


class OptimizationError(ImageIngestError):
    """Raised when decoding, filtering or encoding an image fails."""


class UploadError(ImageIngestError):
    """Raised for storage write failures. These are retried."""


class UploadCancelledError(UploadError):
    """Raised when an in-flight upload is cancelled through the registry."""


class ConsistencyError(ImageIngestError):
    """Raised when the metadata record could not be written after the blob was stored."""


F = TypeVar("F", bound=Callable[..., Any])


def with_error_handling(error_cls: Type[ImageIngestError]) -> Callable[[F], F]:
    """
    Wrap a function so unexpected exceptions surface as ``error_cls``.

    Pipeline errors pass through untouched; anything else is logged with its
    traceback and re-raised as ``error_cls`` chained to the original. Works
    for plain and coroutine functions.
    """

    def decorator(func: F) -> F:
        logger = get_logger(f"image-ingest.{func.__module__.rsplit('.', 1)[-1]}")

        def translate(exc: Exception) -> ImageIngestError:
            logger.error(f"Unhandled error in {func.__name__}: {exc}", exc_info=True)
            return error_cls(f"{func.__name__} failed: {exc}")

        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    return await func(*args, **kwargs)
                except ImageIngestError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    raise translate(exc) from exc

            return async_wrapper  # type: ignore[return-value]

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except ImageIngestError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise translate(exc) from exc

        return wrapper  # type: ignore[return-value]

    return decorator
