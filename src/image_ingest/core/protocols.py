"""Protocol definitions for dependency injection and testability."""

from typing import Any, Dict, List, Optional, Protocol, Tuple

from PIL import Image

from .models import Dimensions

# Decoded pixels. Always RGB or RGBA so filters can address channels directly.
RasterBuffer = Image.Image


class ImageCodec(Protocol):
    """Decode, resample and encode raster images."""

    def probe(self, data: bytes) -> Tuple[Dimensions, Optional[str]]:
        """Read dimensions and container format from the header only."""
        ...

    def decode(self, data: bytes) -> RasterBuffer:
        """Decode image bytes into pixels, honouring EXIF orientation."""
        ...

    def resize(self, buffer: RasterBuffer, width: int, height: int) -> RasterBuffer:
        """Resample to exactly ``width`` x ``height`` with high quality interpolation."""
        ...

    def encode(
        self,
        buffer: RasterBuffer,
        format: str,
        quality: float,
        *,
        progressive: bool = True,
        lossless: bool = False,
        exif: Optional[bytes] = None,
    ) -> bytes:
        """Encode pixels. ``quality`` is on the 0-1 scale."""
        ...

    def supports_encoding(self, format: str) -> bool:
        """Whether the runtime can write ``format``."""
        ...

    def read_exif(self, data: bytes) -> Optional[bytes]:
        """Raw EXIF block of the source, if any."""
        ...


class BlobStore(Protocol):
    """Object storage used for image bytes."""

    async def put(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` and return its public URL."""
        ...

    async def remove(self, bucket: str, paths: List[str]) -> None:
        """Delete objects. Removing a missing path is not an error."""
        ...

    def get_public_url(self, bucket: str, path: str) -> str:
        """Public URL of an object."""
        ...


class MetadataStore(Protocol):
    """Persistence for image records."""

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record and return it with its generated ``id``."""
        ...

    async def update(self, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``changes`` to a record and return the updated record."""
        ...

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a record by id."""
        ...

    async def delete(self, record_id: str) -> None:
        """Delete a record by id."""
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log debug message."""
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log info message."""
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log warning message."""
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log error message."""
        ...
