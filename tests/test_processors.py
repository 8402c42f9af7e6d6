"""Tests for processor modules."""

import asyncio

import pytest

from image_ingest.core.models import (
    ProcessingResult,
    ProcessingStage,
    ProcessingStatus,
    ProcessingSummary,
    SourceFile,
    ValidationResult,
)
from image_ingest.processors import (
    AbortSignal,
    ProgressTracker,
    parallel_process_batch,
    sequential_process_batch,
)
from image_ingest.testing.fakes import FakeLogger


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _source(name: str) -> SourceFile:
    return SourceFile(name=name, content=b"x" * 10, media_type="image/jpeg")


def _ok(source: SourceFile) -> ProcessingResult:
    return ProcessingResult(
        file=source,
        original_file=source,
        validation=ValidationResult(),
        summary=ProcessingSummary(
            processing_time_ms=1.0,
            original_bytes=source.size,
            final_bytes=source.size,
            original_format="jpeg",
            final_format="jpeg",
        ),
        status=ProcessingStatus.SUCCESS,
    )


def _files(count: int):
    return [_source(f"{i}.jpg") for i in range(count)]


class TestProgressTracker:
    """Tests for ProgressTracker snapshots."""

    def test_fraction_eta_and_throughput(self):
        clock = FakeClock()
        tracker = ProgressTracker(total=4, logger=FakeLogger(), clock=clock)
        files = _files(2)

        clock.now = 2.0
        tracker.file_started(files[0])
        tracker.file_finished(_ok(files[0]))
        progress = tracker.snapshot()

        assert progress.completed == 1
        assert progress.fraction_done == pytest.approx(0.25)
        assert progress.eta_ms == pytest.approx(6000.0)
        assert progress.throughput_per_sec == pytest.approx(0.5)

        clock.now = 4.0
        tracker.file_started(files[1])
        tracker.file_finished(ProcessingResult.failure(files[1], ["bad"]))
        progress = tracker.snapshot()

        assert progress.failed == 1
        assert progress.fraction_done == pytest.approx(0.25)
        assert progress.eta_ms == pytest.approx(12000.0)

    def test_eta_is_zero_before_first_completion(self):
        tracker = ProgressTracker(total=3, logger=FakeLogger(), clock=FakeClock())
        assert tracker.snapshot().eta_ms == 0.0
        assert tracker.snapshot().throughput_per_sec == 0.0

    def test_finish_reports_complete_batch(self):
        clock = FakeClock()
        seen = []
        tracker = ProgressTracker(total=2, listeners=[seen.append], logger=FakeLogger(), clock=clock)
        files = _files(2)
        for source in files:
            tracker.file_started(source)
        clock.now = 1.0
        tracker.file_finished(_ok(files[0]))
        tracker.file_finished(ProcessingResult.failure(files[1], ["bad"]))

        final = tracker.finish()

        assert final.stage is ProcessingStage.COMPLETE
        assert final.fraction_done == 1.0
        assert final.eta_ms == 0.0
        assert [p.stage for p in seen] == [
            ProcessingStage.DONE,
            ProcessingStage.DONE,
            ProcessingStage.COMPLETE,
        ]
        assert seen[0].in_flight == 1

    def test_finish_after_abort_keeps_fraction(self):
        tracker = ProgressTracker(total=4, logger=FakeLogger(), clock=FakeClock())
        tracker.file_started(_source("a.jpg"))
        tracker.file_finished(_ok(_source("a.jpg")))

        assert tracker.finish().fraction_done == pytest.approx(0.25)

    def test_empty_batch(self):
        assert ProgressTracker(total=0, logger=FakeLogger()).finish().fraction_done == 1.0

    def test_listener_failure_is_logged(self):
        logger = FakeLogger()
        seen = []

        def broken(progress):
            raise RuntimeError("listener bug")

        tracker = ProgressTracker(total=1, listeners=[broken, seen.append], logger=logger)
        tracker.stage_changed(_source("a.jpg"), ProcessingStage.VALIDATING)

        assert seen[0].current_file == "a.jpg"
        assert seen[0].stage is ProcessingStage.VALIDATING
        assert logger.get_logs("WARNING")[0]["message"] == "Progress listener failed: listener bug"


class TestSequentialProcessor:
    """Tests for the sequential executor."""

    def test_processes_in_order(self):
        files = _files(3)
        order = []

        async def process(source):
            order.append(source.name)
            return _ok(source)

        tracker = ProgressTracker(total=3, logger=FakeLogger())
        results = asyncio.run(
            sequential_process_batch(files, process, tracker, AbortSignal(), logger=FakeLogger())
        )

        assert order == ["0.jpg", "1.jpg", "2.jpg"]
        assert [r.file.name for r in results] == order
        assert tracker.peak_in_flight == 1

    def test_abort_skips_remaining_files(self):
        files = _files(4)
        signal = AbortSignal()

        async def process(source):
            if source.name == "1.jpg":
                signal.abort()
            return _ok(source)

        tracker = ProgressTracker(total=4, logger=FakeLogger())
        results = asyncio.run(sequential_process_batch(files, process, tracker, signal, logger=FakeLogger()))

        assert [r.file.name for r in results] == ["0.jpg", "1.jpg"]
        assert tracker.completed == 2

    def test_unexpected_exception_becomes_error_result(self):
        async def process(source):
            raise ValueError("kaboom")

        tracker = ProgressTracker(total=1, logger=FakeLogger())
        results = asyncio.run(
            sequential_process_batch(_files(1), process, tracker, AbortSignal(), logger=FakeLogger())
        )

        assert results[0].status is ProcessingStatus.ERROR
        assert results[0].errors == ["Unexpected error: kaboom"]
        assert tracker.failed == 1


class TestParallelProcessor:
    """Tests for the semaphore-bounded parallel executor."""

    def test_concurrency_bound_and_order(self):
        files = _files(10)
        tracker = ProgressTracker(total=10, logger=FakeLogger())

        async def process(source):
            # later files finish first
            await asyncio.sleep(0.001 * (10 - int(source.stem)))
            return _ok(source)

        results = asyncio.run(
            parallel_process_batch(files, process, tracker, AbortSignal(), max_concurrent=3, logger=FakeLogger())
        )

        assert [r.file.name for r in results] == [f.name for f in files]
        assert 1 < tracker.peak_in_flight <= 3
        assert tracker.completed == 10

    def test_single_slot_runs_one_at_a_time(self):
        tracker = ProgressTracker(total=5, logger=FakeLogger())

        async def process(source):
            await asyncio.sleep(0)
            return _ok(source)

        asyncio.run(
            parallel_process_batch(_files(5), process, tracker, AbortSignal(), max_concurrent=1, logger=FakeLogger())
        )

        assert tracker.peak_in_flight == 1

    def test_abort_skips_waiting_files(self):
        files = _files(6)
        signal = AbortSignal()

        async def process(source):
            await asyncio.sleep(0.01)
            if source.name == "0.jpg":
                signal.abort()
            return _ok(source)

        tracker = ProgressTracker(total=6, logger=FakeLogger())
        results = asyncio.run(
            parallel_process_batch(files, process, tracker, signal, max_concurrent=2, logger=FakeLogger())
        )

        assert [r.file.name for r in results] == ["0.jpg", "1.jpg"]
        assert tracker.finish().completed == 2

    def test_failures_do_not_stop_batch(self):
        async def process(source):
            if source.name == "2.jpg":
                raise RuntimeError("boom")
            return _ok(source)

        tracker = ProgressTracker(total=4, logger=FakeLogger())
        results = asyncio.run(
            parallel_process_batch(_files(4), process, tracker, AbortSignal(), logger=FakeLogger())
        )

        assert [r.status for r in results] == [
            ProcessingStatus.SUCCESS,
            ProcessingStatus.SUCCESS,
            ProcessingStatus.ERROR,
            ProcessingStatus.SUCCESS,
        ]
        assert (tracker.completed, tracker.failed) == (3, 1)
