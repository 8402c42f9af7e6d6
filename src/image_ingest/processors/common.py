"""Progress tracking, abort signalling and per-file execution shared by the batch executors."""

import threading
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from ..core.models import BatchProgress, ProcessingResult, ProcessingStage, SourceFile
from ..core.observability import StructuredLogger
from ..core.protocols import LoggerProtocol

ProgressListener = Callable[[BatchProgress], None]
FileProcessor = Callable[[SourceFile], Awaitable[ProcessingResult]]


class AbortSignal:
    """Cooperative cancellation flag checked before each file is dispatched."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def abort(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def is_aborted(self) -> bool:
        return self._event.is_set()


class ProgressTracker:
    """
    Counts file completions for one batch and pushes a ``BatchProgress``
    snapshot to every listener on each stage transition.

    ``fraction_done`` is ``completed / total``; the ETA extrapolates the mean
    time per completed file and is 0 until the first file completes. A
    listener that raises is logged and skipped.
    """

    def __init__(
        self,
        total: int,
        listeners: Sequence[ProgressListener] = (),
        logger: Optional[LoggerProtocol] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.total = total
        self.completed = 0
        self.failed = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self._listeners: List[ProgressListener] = list(listeners)
        self._logger = logger or StructuredLogger("image-ingest.progress")
        self._clock = clock
        self._started = clock()

    def snapshot(
        self, current_file: str = "", stage: ProcessingStage = ProcessingStage.PENDING
    ) -> BatchProgress:
        elapsed = self._clock() - self._started
        fraction_done = self.completed / self.total if self.total else 1.0
        eta_ms = 0.0
        if self.completed:
            eta_ms = (self.total - self.completed) * (elapsed * 1000 / self.completed)
        throughput = self.completed / elapsed if elapsed > 0 else 0.0
        return BatchProgress(
            total=self.total,
            completed=self.completed,
            failed=self.failed,
            in_flight=self.in_flight,
            current_file=current_file,
            stage=stage,
            fraction_done=fraction_done,
            eta_ms=eta_ms,
            throughput_per_sec=throughput,
        )

    def file_started(self, source: SourceFile) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

    def stage_changed(self, source: SourceFile, stage: ProcessingStage) -> None:
        self._emit(self.snapshot(source.name, stage))

    def file_finished(self, result: ProcessingResult) -> None:
        self.in_flight -= 1
        if result.succeeded:
            self.completed += 1
        else:
            self.failed += 1
        self._emit(self.snapshot(result.original_file.name, ProcessingStage.DONE))

    def finish(self) -> BatchProgress:
        """Emit and return the final snapshot of the batch."""
        progress = self.snapshot(stage=ProcessingStage.COMPLETE)
        if self.completed + self.failed == self.total:
            progress = progress.model_copy(update={"fraction_done": 1.0, "eta_ms": 0.0})
        self._emit(progress)
        return progress

    def _emit(self, progress: BatchProgress) -> None:
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(f"Progress listener failed: {exc}")


async def run_file(
    source: SourceFile,
    process_file: FileProcessor,
    tracker: ProgressTracker,
    logger: LoggerProtocol,
) -> ProcessingResult:
    """Run one file to a terminal result; unexpected exceptions become error results."""
    tracker.file_started(source)
    try:
        result = await process_file(source)
    except Exception as exc:  # noqa: BLE001
        logger.error(f"[{source.name}] Processing failed unexpectedly: {exc}")
        result = ProcessingResult.failure(source, [f"Unexpected error: {exc}"])
    tracker.file_finished(result)
    return result
