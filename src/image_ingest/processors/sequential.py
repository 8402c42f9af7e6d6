"""Sequential executor - runs the files of a batch one by one."""

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
    logger: Optional[LoggerProtocol] = None,
) -> List[ProcessingResult]:
    """
    Process a batch one file at a time, in submission order.

    The abort signal is checked before each file; once it is set the
    remaining files are skipped and left out of the results.

    Args:
        files: Files to process.
        process_file: Coroutine function producing the result of one file.
        tracker: Progress tracker for the batch.
        abort_signal: Cooperative cancellation flag.
        logger: Logger for skipped files and unexpected errors.

    Returns:
        One result per file that was started.
    """
    log = logger or StructuredLogger("image-ingest.processors.sequential")
    results: List[ProcessingResult] = []

    for index, source in enumerate(files):
        if abort_signal.is_aborted:
            log.info(f"Batch aborted, skipping {len(files) - index} file(s)")
            break
        results.append(await run_file(source, process_file, tracker, log))

    return results
