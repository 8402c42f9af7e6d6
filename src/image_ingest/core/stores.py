"""Storage collaborators: S3 blob store and an in-memory metadata store."""

import asyncio
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import aioboto3
from botocore.exceptions import ClientError as BotocoreClientError

from .exceptions import UploadError, with_error_handling
from .logging_config import get_logger

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client
else:
    S3Client = Any

CACHE_CONTROL = "max-age=3600"


def _client_error_message(exc: BotocoreClientError) -> str:
    error = exc.response.get("Error", {})
    return f"{error.get('Code', 'Unknown')}: {error.get('Message', str(exc))}"


class S3BlobStore:
    """
    Blob store backed by S3 (or any S3 compatible endpoint) through aioboto3.

    A client is opened per call; aioboto3 clients are async context managers
    and are not shared between event loops.
    """

    def __init__(
        self,
        session: Optional[aioboto3.Session] = None,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        self._session = session or aioboto3.Session()
        self._region_name = region_name
        self._endpoint_url = endpoint_url
        self._public_base_url = public_base_url
        self._logger = get_logger("image-ingest.stores")

    def _client(self) -> Any:
        return self._session.client(
            "s3", region_name=self._region_name, endpoint_url=self._endpoint_url
        )

    @with_error_handling(UploadError)
    async def put(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        self._logger.debug(f"Uploading {len(data)} bytes to s3://{bucket}/{path}")
        s3_client: S3Client
        try:
            async with self._client() as s3_client:
                await s3_client.put_object(
                    Bucket=bucket,
                    Key=path,
                    Body=data,
                    ContentType=content_type,
                    CacheControl=CACHE_CONTROL,
                )
        except BotocoreClientError as exc:
            raise UploadError(f"Storage upload failed: {_client_error_message(exc)}") from exc
        return self.get_public_url(bucket, path)

    @with_error_handling(UploadError)
    async def remove(self, bucket: str, paths: List[str]) -> None:
        if not paths:
            return
        self._logger.debug(f"Removing {len(paths)} object(s) from s3://{bucket}")
        s3_client: S3Client
        try:
            async with self._client() as s3_client:
                await s3_client.delete_objects(
                    Bucket=bucket,
                    Delete={"Objects": [{"Key": path} for path in paths], "Quiet": True},
                )
        except BotocoreClientError as exc:
            raise UploadError(f"Storage removal failed: {_client_error_message(exc)}") from exc

    def get_public_url(self, bucket: str, path: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url.rstrip('/')}/{path}"
        if self._endpoint_url:
            return f"{self._endpoint_url.rstrip('/')}/{bucket}/{path}"
        if self._region_name:
            return f"https://{bucket}.s3.{self._region_name}.amazonaws.com/{path}"
        return f"https://{bucket}.s3.amazonaws.com/{path}"


class InMemoryMetadataStore:
    """Metadata store that keeps image records in a dict for the life of the process."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            stored = {**record, "id": uuid.uuid4().hex}
            self._records[stored["id"]] = stored
            return dict(stored)

    async def update(self, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Image record {record_id} not found")
            self._records[record_id].update(changes)
            return dict(self._records[record_id])

    async def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get(record_id)
            return dict(record) if record is not None else None

    async def delete(self, record_id: str) -> None:
        async with self._lock:
            self._records.pop(record_id, None)

    def dump(self) -> List[Dict[str, Any]]:
        return [dict(record) for record in self._records.values()]
