"""End-to-end tests for the processing pipeline with in-memory collaborators."""

import asyncio

import pytest

from image_ingest.core.codec import PillowImageCodec
from image_ingest.core.exceptions import OptimizationError
from image_ingest.core.models import (
    BatchOptions,
    Dimensions,
    OptimizationOptions,
    ProcessingOptions,
    ProcessingStage,
    ProcessingStatus,
    SourceFile,
    UploadContext,
    UploadOptions,
    ValidationOptions,
)
from image_ingest.core.optimization import ImageOptimizationService
from image_ingest.core.pipeline import ImageProcessingPipeline
from image_ingest.core.upload import UploadService
from image_ingest.core.validation import ImageValidationService
from image_ingest.testing.fakes import (
    FakeBlobStore,
    FakeLogger,
    FakeMetadataStore,
    make_source_file,
)


class SpyOptimizer(ImageOptimizationService):
    """Optimizer that counts calls and can be told to fail."""

    def __init__(self, fail_with=None):
        super().__init__(PillowImageCodec(), FakeLogger())
        self.calls = []
        self.fail_with = fail_with

    def optimize(self, source, options=None):
        self.calls.append(source.name)
        if self.fail_with:
            raise OptimizationError(self.fail_with)
        return super().optimize(source, options)


class Harness:
    def __init__(self, optimizer=None):
        self.blob_store = FakeBlobStore()
        self.metadata_store = FakeMetadataStore()
        self.logger = FakeLogger()
        self.optimizer = optimizer or SpyOptimizer()
        # thumbnails are rendered by a separate optimizer so they do not count as calls
        uploader = UploadService(
            self.blob_store,
            self.metadata_store,
            ImageOptimizationService(PillowImageCodec(), self.logger),
            self.logger,
        )
        self.pipeline = ImageProcessingPipeline(
            validator=ImageValidationService(PillowImageCodec(), self.logger),
            optimizer=self.optimizer,
            uploader=uploader,
            logger=self.logger,
        )

    def puts(self):
        return [path for op, _, path in self.blob_store.operations if op == "put"]


def _options(**batch):
    return ProcessingOptions(
        optimization=OptimizationOptions(format="jpeg"),
        upload=UploadOptions(retry_delay=0, generate_thumbnails=False),
        batch=BatchOptions(**batch),
    )


@pytest.fixture
def harness():
    return Harness()


class TestSingleFile:
    """process_image scenarios."""

    def test_rejected_file_never_reaches_optimizer_or_storage(self, harness):
        source = make_source_file("small.png", 50, 50, "PNG")

        result = asyncio.run(harness.pipeline.process_image(source, _options()))

        assert result.status is ProcessingStatus.ERROR
        assert "below minimum required" in result.errors[0]
        assert result.file is source
        assert result.upload is None
        assert harness.optimizer.calls == []
        assert harness.puts() == []

    def test_oversized_file_rejected(self, harness):
        options = _options()
        options.validation = ValidationOptions(max_file_size=100)

        result = asyncio.run(harness.pipeline.process_image(make_source_file("a.jpg"), options))

        assert result.status is ProcessingStatus.ERROR
        assert "exceeds maximum allowed size" in result.errors[0]

    def test_optimization_skipped_for_ready_file(self, harness):
        source = make_source_file("ready.jpg", 400, 300)
        stages = []

        result = asyncio.run(
            harness.pipeline.process_image(
                source, _options(), UploadContext(property_id="p1"), on_stage=stages.append
            )
        )

        assert result.status is ProcessingStatus.SUCCESS
        assert result.optimization is None
        assert result.file is source
        assert result.summary.final_bytes == source.size
        assert harness.optimizer.calls == []
        assert stages == [ProcessingStage.VALIDATING, ProcessingStage.UPLOADING]
        assert result.upload.storage_path.startswith("p1/")

    def test_large_file_is_optimized_before_upload(self, harness):
        source = make_source_file("house.jpg", 3000, 2000)
        stages = []

        result = asyncio.run(harness.pipeline.process_image(source, _options(), on_stage=stages.append))

        assert result.status is ProcessingStatus.SUCCESS
        assert harness.optimizer.calls == ["house.jpg"]
        assert result.summary.original_dimensions == Dimensions(width=3000, height=2000)
        assert result.summary.final_dimensions == Dimensions(width=1620, height=1080)
        assert result.file is result.optimization.output_file
        assert result.original_file is source
        assert ProcessingStage.OPTIMIZING in stages
        stored, _ = harness.blob_store.objects[("property-images", result.upload.storage_path)]
        assert stored == result.file.content

    def test_validation_warnings_give_warning_status(self, harness):
        jpeg = make_source_file("a.jpg", 400, 300)
        renamed = SourceFile(name="a.png", content=jpeg.content, media_type="image/jpeg")

        result = asyncio.run(harness.pipeline.process_image(renamed, _options()))

        assert result.status is ProcessingStatus.WARNING
        assert result.warnings == ["File extension 'png' doesn't match MIME type 'image/jpeg'"]
        assert result.upload is not None

    def test_optimization_failure_keeps_original(self):
        harness = Harness(SpyOptimizer(fail_with="encoder crashed"))
        source = make_source_file("house.jpg", 3000, 2000)

        result = asyncio.run(harness.pipeline.process_image(source, _options()))

        assert result.status is ProcessingStatus.ERROR
        assert result.errors == ["Optimization failed: encoder crashed"]
        assert result.file is source
        assert harness.puts() == []

    def test_insert_failure_is_rolled_back(self, harness):
        harness.metadata_store.set_failure_mode(True)

        result = asyncio.run(harness.pipeline.process_image(make_source_file("a.jpg", 400, 300), _options()))

        assert result.status is ProcessingStatus.ERROR
        assert result.errors[0].startswith("Upload failed after 3 attempts: Database insert failed")
        assert harness.blob_store.objects == {}
        assert len(harness.puts()) == 3

    def test_thumbnail_failure_is_a_warning(self, harness):
        harness.blob_store.set_failure_mode(False, when=lambda bucket, path, data: "_thumb" in path)
        options = _options()
        options.upload = UploadOptions(retry_delay=0)

        result = asyncio.run(harness.pipeline.process_image(make_source_file("den.jpg", 400, 300), options))

        assert result.status is ProcessingStatus.WARNING
        assert result.warnings[0].startswith("Thumbnail thumb (150x150) failed")
        assert [t.size_label for t in result.upload.thumbnails] == ["400x300", "800x600"]


class TestBatch:
    """process_images scenarios."""

    def test_parallel_batch_with_one_failure(self, harness):
        files = [make_source_file(f"{i}.jpg", 200, 150) for i in range(9)]
        files.insert(4, make_source_file("bad.jpg", 200, 150))
        harness.metadata_store.set_failure_mode(
            False, when=lambda record: record["original_filename"] == "bad.jpg"
        )
        harness.blob_store.set_delay(0.01)
        snapshots = []

        results = asyncio.run(
            harness.pipeline.process_images(files, _options(max_concurrent_uploads=3), on_progress=snapshots.append)
        )

        assert [r.original_file.name for r in results] == [f.name for f in files]
        assert [r.status for r in results].count(ProcessingStatus.ERROR) == 1
        assert results[4].status is ProcessingStatus.ERROR
        assert "bad.jpg" not in [r["original_filename"] for r in harness.metadata_store.records.values()]
        assert harness.blob_store.max_active_puts <= 3
        assert max(s.in_flight for s in snapshots) <= 3

        final = harness.pipeline.last_progress
        assert (final.completed, final.failed, final.total) == (9, 1, 10)
        assert final.fraction_done == 1.0
        assert final.eta_ms == 0.0
        assert final.stage is ProcessingStage.COMPLETE
        assert snapshots[-1] == final

    def test_sequential_batch(self, harness):
        files = [make_source_file(f"{i}.jpg", 200, 150) for i in range(4)]
        harness.blob_store.set_delay(0.005)

        results = asyncio.run(
            harness.pipeline.process_images(files, _options(enable_parallel_processing=False))
        )

        assert [r.original_file.name for r in results] == [f.name for f in files]
        assert harness.blob_store.max_active_puts == 1

    def test_listener_exceptions_are_tolerated(self, harness):
        def broken(progress):
            raise RuntimeError("listener bug")

        harness.pipeline.add_progress_listener(broken)
        files = [make_source_file(f"{i}.jpg", 200, 150) for i in range(3)]

        results = asyncio.run(harness.pipeline.process_images(files, _options()))

        assert all(r.status is ProcessingStatus.SUCCESS for r in results)
        assert harness.logger.get_logs("WARNING")[0]["message"] == "Progress listener failed: listener bug"

        harness.pipeline.remove_progress_listener(broken)
        harness.logger.clear_logs()
        asyncio.run(harness.pipeline.process_images(files[:1], _options(enable_caching=False)))
        assert harness.logger.get_logs("WARNING") == []

    def test_abort_stops_dispatch(self, harness):
        files = [make_source_file(f"{i}.jpg", 200, 150) for i in range(5)]

        def stop_after_two(progress):
            if progress.stage is ProcessingStage.DONE and progress.completed == 2:
                harness.pipeline.abort()

        harness.pipeline.add_progress_listener(stop_after_two)
        results = asyncio.run(
            harness.pipeline.process_images(files, _options(enable_parallel_processing=False))
        )

        assert [r.original_file.name for r in results] == ["0.jpg", "1.jpg"]
        assert harness.pipeline.last_progress.fraction_done == pytest.approx(0.4)

        harness.pipeline.remove_progress_listener(stop_after_two)
        results = asyncio.run(harness.pipeline.process_images(files, _options(enable_parallel_processing=False)))
        assert len(results) == 5

    def test_cache_reuses_validation_but_always_uploads(self, harness):
        files = [make_source_file("a.jpg", 200, 150)]

        first = asyncio.run(harness.pipeline.process_images(files, _options()))
        second = asyncio.run(harness.pipeline.process_images(files, _options()))

        assert len(harness.puts()) == 2
        assert first[0].upload.record_id != second[0].upload.record_id
        assert len(harness.metadata_store.records) == 2
        stats = harness.pipeline.get_cache_stats()
        assert (stats.validation_count, stats.upload_count) == (1, 2)
        assert stats.hits == 1

        harness.pipeline.clear_cache()
        assert harness.pipeline.get_cache_stats().upload_count == 0

    def test_reprocessing_after_delete_stores_again(self, harness):
        source = make_source_file("a.jpg", 200, 150)

        first = asyncio.run(harness.pipeline.process_image(source, _options()))
        assert asyncio.run(harness.pipeline.delete_image(first.upload.record_id)) is True
        assert harness.pipeline.get_cache_stats().upload_count == 0

        second = asyncio.run(harness.pipeline.process_image(source, _options()))

        assert second.status is ProcessingStatus.SUCCESS
        assert second.upload.record_id != first.upload.record_id
        assert asyncio.run(harness.metadata_store.get(second.upload.record_id)) is not None
        assert harness.blob_store.paths() == [second.upload.storage_path]
        assert harness.pipeline.get_cache_stats().upload_count == 1

    def test_same_stem_files_keep_separate_thumbnails(self, harness):
        options = _options()
        options.upload = UploadOptions(retry_delay=0)
        files = [make_source_file("front.jpg", 200, 150), make_source_file("front.png", 300, 200, "PNG")]

        results = asyncio.run(harness.pipeline.process_images(files, options))

        thumb_paths = [t.path for r in results for t in r.upload.thumbnails]
        assert len(thumb_paths) == 6
        assert len(set(thumb_paths)) == 6
        for result in results:
            base = result.upload.storage_path.rsplit("/", 1)[-1].rsplit(".", 1)[0]
            assert all(t.path.startswith(f"thumbnails/unassigned/{base}_") for t in result.upload.thumbnails)

    def test_thumbnails_are_stored_per_property(self, harness):
        options = _options()
        options.upload = UploadOptions(retry_delay=0)
        source = make_source_file("front.jpg", 200, 150)

        for property_id in ("p1", "p2"):
            asyncio.run(harness.pipeline.process_image(source, options, UploadContext(property_id=property_id)))

        thumbs = [path for path in harness.blob_store.paths() if path.startswith("thumbnails/")]
        assert len(thumbs) == 6
        assert sum(path.startswith("thumbnails/p1/") for path in thumbs) == 3
        assert sum(path.startswith("thumbnails/p2/") for path in thumbs) == 3

    def test_metrics_recorded_per_stage(self, harness):
        files = [make_source_file(f"{i}.jpg", 200, 150) for i in range(3)]

        asyncio.run(harness.pipeline.process_images(files, _options()))

        assert harness.pipeline.metrics.get_summary("validate")["total_operations"] == 3
        assert harness.pipeline.metrics.get_summary("upload")["successful_operations"] == 3
        assert harness.pipeline.metrics.get_summary("optimize") == {}

    def test_cancel_uploads_with_nothing_in_flight(self, harness):
        assert harness.pipeline.cancel_uploads() == 0
