"""Retry and batch error reporting helpers."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Tuple, Type, TypeVar

from .exceptions import ConsistencyError, UploadCancelledError, UploadError

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (UploadError, ConsistencyError)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    retryable: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    operation_name: str = "operation",
) -> T:
    """
    Await ``operation`` until it succeeds or ``max_attempts`` are used up.

    Sleeps ``initial_delay * backoff_factor ** (attempt - 1)`` seconds between
    attempts. Cancellation and non-retryable errors propagate immediately.
    When every attempt fails, an ``UploadError`` carrying the attempt count
    and the last error is raised, chained to that last error.
    """
    logger = logging.getLogger(f"image-ingest.retry.{operation_name}")
    last_error: BaseException = UploadError("no attempt made")

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except UploadCancelledError:
            raise
        except retryable as exc:
            last_error = exc
            if attempt >= max_attempts:
                break
            delay = initial_delay * backoff_factor ** (attempt - 1)
            logger.info(
                f"'{operation_name}' failed. Attempt {attempt}/{max_attempts}. "
                f"Retrying in {delay:.2f}s. Error: {exc}"
            )
            await asyncio.sleep(delay)

    logger.error(f"'{operation_name}' failed after {max_attempts} attempts. Error: {last_error}")
    raise UploadError(
        f"Upload failed after {max_attempts} attempts: {last_error}"
    ) from last_error


class BatchOperationContextManager:
    """
    Context manager for batch operations to collect and summarize errors.
    """

    def __init__(self, operation_name: str = "Batch Operation"):
        self.operation_name = operation_name
        self.errors: List[Dict[str, str]] = []
        self.logger = logging.getLogger(
            "image-ingest." + self.__class__.__module__ + "." + self.__class__.__name__
        )

    def __enter__(self) -> "BatchOperationContextManager":
        self.logger.info(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        if self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s)."
            )
            for i, error_detail in enumerate(self.errors):
                self.logger.error(
                    f"  Error {i + 1}/{len(self.errors)} for item "
                    f"'{error_detail['item']}': {error_detail['error']}"
                )
        elif exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )
        else:
            self.logger.info(f"{self.operation_name} completed successfully.")

        # Never suppress exceptions raised inside the block
        return False

    def add_error(self, error_message: str, item_identifier: str = "Unknown item") -> None:
        """
        Report an error for a specific item.

        Args:
            error_message: The error message or exception string.
            item_identifier: A string identifying the item that failed (e.g. file name).
        """
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(
            f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}"
        )
