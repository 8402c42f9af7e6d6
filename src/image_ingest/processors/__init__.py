"""Batch executors with different scheduling strategies."""

from .common import AbortSignal, ProgressTracker
from .parallel import process_batch as parallel_process_batch
from .sequential import process_batch as sequential_process_batch

__all__ = [
    "AbortSignal",
    "ProgressTracker",
    "parallel_process_batch",
    "sequential_process_batch",
]
