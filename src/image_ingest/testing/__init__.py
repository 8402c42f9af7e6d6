"""Testing utilities and fakes for the image ingestion pipeline."""

from .fakes import (
    FakeBlobStore,
    FakeLogger,
    FakeMetadataStore,
    create_test_image,
    make_source_file,
)

__all__ = [
    "FakeBlobStore",
    "FakeMetadataStore",
    "FakeLogger",
    "create_test_image",
    "make_source_file",
]
