import asyncio
import io
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoice_intake.core.config import Settings

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    pass


class BlobStore(ABC):
    """Object storage for uploaded PDFs, addressed by URL."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store data under key and return its URL."""

    @abstractmethod
    async def get(self, url: str) -> bytes: ...

    @abstractmethod
    async def delete(self, url: str) -> None: ...


class LocalBlobStore(BlobStore):
    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _path_for_key(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise BlobStoreError(f"Key escapes blob root: {key}")
        return path

    def _path_for_url(self, url: str) -> Path:
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise BlobStoreError(f"Not a local blob URL: {url}")
        path = Path(url2pathname(parsed.path)).resolve()
        if not path.is_relative_to(self._root):
            raise BlobStoreError(f"URL outside blob root: {url}")
        return path

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for_key(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise BlobStoreError(f"Failed to store {key}: {exc}") from exc
        logger.info("Stored blob", extra={"key": key, "size_bytes": len(data)})
        return path.as_uri()

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def get(self, url: str) -> bytes:
        path = self._path_for_url(url)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise BlobStoreError(f"Failed to read {url}: {exc}") from exc

    async def delete(self, url: str) -> None:
        path = self._path_for_url(url)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            raise BlobStoreError(f"Failed to delete {url}: {exc}") from exc


_STORAGE_ERRORS = (S3Error, TransportError)

_s3_retry = retry(
    retry=retry_if_exception_type(S3Error),
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(initial=1, max=10),
    reraise=True,
)


class MinioBlobStore(BlobStore):
    """S3-compatible blob store backed by MinIO."""

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        secure: bool = False,
        client: Minio | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._access_key = access_key
        self._secret_key = secret_key
        self._bucket = bucket
        self._secure = secure
        self._client = client
        self._bucket_ready = False

    def _get_client(self) -> Minio:
        if self._client is None:
            if not self._access_key or not self._secret_key:
                raise BlobStoreError(
                    "MinIO credentials not configured. "
                    "Set MINIO_ACCESS_KEY and MINIO_SECRET_KEY."
                )
            self._client = Minio(
                endpoint=self._endpoint,
                access_key=self._access_key,
                secret_key=self._secret_key,
                secure=self._secure,
            )
            logger.info("MinIO client initialized", extra={"endpoint": self._endpoint})
        return self._client

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        client = self._get_client()
        if not client.bucket_exists(self._bucket):
            client.make_bucket(self._bucket)
            logger.info("Created bucket", extra={"bucket": self._bucket})
        self._bucket_ready = True

    def url_for(self, key: str) -> str:
        scheme = "https" if self._secure else "http"
        return f"{scheme}://{self._endpoint}/{self._bucket}/{key}"

    def _key_for(self, url: str) -> str:
        prefix = self.url_for("")
        if not url.startswith(prefix):
            raise BlobStoreError(f"URL not in bucket {self._bucket}: {url}")
        return url[len(prefix) :]

    @_s3_retry
    def _put_sync(self, key: str, data: bytes, content_type: str) -> None:
        self._ensure_bucket()
        self._get_client().put_object(
            self._bucket,
            key,
            io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    @_s3_retry
    def _get_sync(self, key: str) -> bytes:
        response = self._get_client().get_object(self._bucket, key)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    @_s3_retry
    def _delete_sync(self, key: str) -> None:
        self._get_client().remove_object(self._bucket, key)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            await asyncio.to_thread(self._put_sync, key, data, content_type)
        except _STORAGE_ERRORS as exc:
            raise BlobStoreError(f"Failed to store {key}: {exc}") from exc
        logger.info("Stored blob", extra={"key": key, "size_bytes": len(data)})
        return self.url_for(key)

    async def get(self, url: str) -> bytes:
        key = self._key_for(url)
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except _STORAGE_ERRORS as exc:
            raise BlobStoreError(f"Failed to read {key}: {exc}") from exc

    async def delete(self, url: str) -> None:
        key = self._key_for(url)
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except _STORAGE_ERRORS as exc:
            raise BlobStoreError(f"Failed to delete {key}: {exc}") from exc


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_backend == "minio":
        return MinioBlobStore(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            bucket=settings.minio_bucket,
            secure=settings.minio_secure,
        )
    return LocalBlobStore(settings.blob_local_dir)
