"""Environment driven settings for the storage backend and batch defaults."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IngestSettings(BaseSettings):
    """Read from ``IMAGE_INGEST_*`` environment variables or a ``.env`` file."""

    model_config = SettingsConfigDict(env_prefix="IMAGE_INGEST_", env_file=".env", extra="ignore")

    bucket: str = "property-images"
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None
    public_base_url: Optional[str] = None
    max_concurrent_uploads: int = Field(default=3, ge=1)
    log_level: str = "INFO"
