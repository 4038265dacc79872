"""
Primary blob storage for invoice artifacts.

The primary tier is the durability guarantee for XML/PDF files: an artifact
counts as stored once it is here and referenced from the database.
Supports local filesystem for development and S3 for production.

Design Decisions:
- Abstract storage interface for multiple backends
- Path-addressed writes; writing the same path again overwrites
- Blocking SDK calls run in the threadpool so the event loop stays free
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from facturaflow.config import Settings
from facturaflow.domain.errors import PrimaryStorageError

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """Metadata for a stored artifact."""
    path: str
    public_url: str
    size_bytes: int
    content_type: str


class BlobStore(ABC):
    """Abstract interface for primary storage backends."""

    name: str = "blob"

    @abstractmethod
    async def put(self, path: str, content: bytes, content_type: str) -> StoredObject:
        """Store content at `path` (overwriting) and return its metadata."""
        pass

    @abstractmethod
    async def retrieve(self, path: str) -> bytes:
        """Retrieve content by storage path."""
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if an object exists."""
        pass

    @abstractmethod
    async def check(self) -> bool:
        """Return True if the backend is reachable."""
        pass


class LocalBlobStore(BlobStore):
    """
    Local filesystem storage for development.

    Mirrors the object path under the base directory:
    storage_path/
        2025/
            S07/
                PROJECT/
                    RFC/
                        <uuid>.xml
    """

    name = "local"

    def __init__(self, base_path: Path, public_base_url: str | None = None) -> None:
        """
        Initialize local storage.

        Args:
            base_path: Base directory for storage
            public_base_url: URL prefix for links; file:// URIs if None
        """
        self.base_path = base_path.resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        logger.info(f"Local storage initialized at {self.base_path}")

    def _resolve(self, path: str) -> Path:
        file_path = (self.base_path / path).resolve()
        if not file_path.is_relative_to(self.base_path):
            raise ValueError("Path traversal not allowed")
        return file_path

    def _public_url(self, path: str, file_path: Path) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{path}"
        return file_path.as_uri()

    async def put(self, path: str, content: bytes, content_type: str) -> StoredObject:
        """Write atomically (write to temp, then replace)."""
        file_path = self._resolve(path)
        temp_path = file_path.with_name(f"{file_path.name}.tmp")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_bytes(content)
            temp_path.replace(file_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise PrimaryStorageError(f"Failed to write {path}: {e}") from e

        return StoredObject(
            path=path,
            public_url=self._public_url(path, file_path),
            size_bytes=len(content),
            content_type=content_type,
        )

    async def retrieve(self, path: str) -> bytes:
        file_path = self._resolve(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Object not found: {path}")
        return file_path.read_bytes()

    async def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    async def check(self) -> bool:
        return self.base_path.is_dir()


class S3BlobStore(BlobStore):
    """
    S3 implementation of the primary tier.

    Objects are written under an optional key prefix. Public links use the
    configured base URL, or the virtual-hosted bucket URL.
    """

    name = "s3"

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "",
        public_base_url: str | None = None,
        client=None,
    ) -> None:
        if not bucket:
            raise ValueError("S3 bucket name is required")

        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip("/")
        if self.prefix:
            self.prefix += "/"
        self.public_base_url = (
            public_base_url.rstrip("/")
            if public_base_url
            else f"https://{bucket}.s3.{region}.amazonaws.com"
        )
        # boto3 picks up credentials from env vars, profile or IAM role
        self.s3 = client or boto3.client("s3", region_name=region)
        logger.info(f"S3 storage initialized with bucket: {bucket}, region: {region}")

    def _key(self, path: str) -> str:
        return f"{self.prefix}{path.lstrip('/')}"

    async def put(self, path: str, content: bytes, content_type: str) -> StoredObject:
        key = self._key(path)
        try:
            await run_in_threadpool(
                self.s3.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise PrimaryStorageError(f"Failed to upload s3://{self.bucket}/{key}: {e}") from e

        return StoredObject(
            path=key,
            public_url=f"{self.public_base_url}/{key}",
            size_bytes=len(content),
            content_type=content_type,
        )

    async def retrieve(self, path: str) -> bytes:
        try:
            response = await run_in_threadpool(
                self.s3.get_object, Bucket=self.bucket, Key=self._key(path)
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"Object not found: {path}") from e
            raise
        return await run_in_threadpool(response["Body"].read)

    async def exists(self, path: str) -> bool:
        try:
            await run_in_threadpool(
                self.s3.head_object, Bucket=self.bucket, Key=self._key(path)
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return False
            raise

    async def check(self) -> bool:
        try:
            await run_in_threadpool(self.s3.head_bucket, Bucket=self.bucket)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"S3 bucket check failed: {e}")
            return False


def build_blob_store(settings: Settings) -> BlobStore:
    """Create the primary store selected by `storage_backend`."""
    if settings.storage_backend == "s3":
        return S3BlobStore(
            bucket=settings.s3_bucket or "",
            region=settings.s3_region,
            prefix=settings.s3_prefix,
            public_base_url=settings.storage_public_base_url,
        )
    return LocalBlobStore(
        base_path=settings.storage_path,
        public_base_url=settings.storage_public_base_url,
    )
