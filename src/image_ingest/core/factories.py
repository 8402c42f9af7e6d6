"""Factory classes for creating configured service instances."""

from typing import Any, Optional

from .cache import ProcessingCache
from .codec import PillowImageCodec
from .logging_config import setup_logger
from .observability import MetricsCollector, StructuredLogger
from .optimization import ImageOptimizationService
from .pipeline import ImageProcessingPipeline
from .protocols import BlobStore, ImageCodec, LoggerProtocol, MetadataStore
from .settings import IngestSettings
from .stores import InMemoryMetadataStore, S3BlobStore
from .upload import UploadService
from .validation import ImageValidationService


class LoggerFactory:
    """Factory for creating logger instances."""

    @staticmethod
    def create_logger(name: str, level: Optional[str] = None) -> LoggerProtocol:
        """Create a configured structured logger."""
        setup_logger(name, level)
        return StructuredLogger(name)


class BlobStoreFactory:
    """Factory for creating blob store instances."""

    @staticmethod
    def create_blob_store(settings: Optional[IngestSettings] = None, **kwargs: Any) -> BlobStore:
        """Create an S3 blob store from settings, with keyword overrides."""
        config = settings or IngestSettings()
        options = {
            "region_name": config.region_name,
            "endpoint_url": config.endpoint_url,
            "public_base_url": config.public_base_url,
            **kwargs,
        }
        return S3BlobStore(**options)


class PipelineFactory:
    """Factory for creating the complete processing pipeline."""

    @staticmethod
    def create_pipeline(
        blob_store: Optional[BlobStore] = None,
        metadata_store: Optional[MetadataStore] = None,
        codec: Optional[ImageCodec] = None,
        logger: Optional[LoggerProtocol] = None,
        settings: Optional[IngestSettings] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> ImageProcessingPipeline:
        """Create a fully wired pipeline; any collaborator left out gets its default."""
        config = settings or IngestSettings()

        if blob_store is None:
            blob_store = BlobStoreFactory.create_blob_store(config)
        if metadata_store is None:
            metadata_store = InMemoryMetadataStore()
        if codec is None:
            codec = PillowImageCodec()
        if logger is None:
            logger = LoggerFactory.create_logger("image-ingest.pipeline", config.log_level)

        validator = ImageValidationService(codec, logger)
        optimizer = ImageOptimizationService(codec, logger)
        uploader = UploadService(blob_store, metadata_store, optimizer, logger)

        return ImageProcessingPipeline(
            validator=validator,
            optimizer=optimizer,
            uploader=uploader,
            cache=ProcessingCache(),
            logger=logger,
            metrics=metrics,
        )
