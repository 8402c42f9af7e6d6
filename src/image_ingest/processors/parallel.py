"""Parallel executor - overlaps file pipelines under a counting semaphore."""

import asyncio
from typing import List, Optional, Sequence

from ..core.models import ProcessingResult, SourceFile
from ..core.observability import StructuredLogger
from ..core.protocols import LoggerProtocol
from .common import AbortSignal, FileProcessor, ProgressTracker, run_file


async def process_batch(
    files: Sequence[SourceFile],
    process_file: FileProcessor,
    tracker: ProgressTracker,
    abort_signal: AbortSignal,
    max_concurrent: int = 3,
    logger: Optional[LoggerProtocol] = None,
) -> List[ProcessingResult]:
    """
    Process a batch with at most ``max_concurrent`` files in flight.

    Every file is dispatched at once and waits for a semaphore slot. The
    abort signal is checked after a slot is acquired, so files already
    running finish while files still waiting are skipped. Results keep
    submission order regardless of completion order.
    """
    log = logger or StructuredLogger("image-ingest.processors.parallel")
    semaphore = asyncio.Semaphore(max_concurrent)

    async def guarded(source: SourceFile) -> Optional[ProcessingResult]:
        async with semaphore:
            if abort_signal.is_aborted:
                log.debug(f"Batch aborted, skipping {source.name}")
                return None
            return await run_file(source, process_file, tracker, log)

    outcomes = await asyncio.gather(*(guarded(source) for source in files))
    results = [result for result in outcomes if result is not None]

    skipped = len(files) - len(results)
    if skipped:
        log.info(f"Batch aborted, skipped {skipped} file(s)")
    return results
