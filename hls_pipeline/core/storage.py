"""Object storage supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Operations return ``StorageResult`` values instead of raising so callers can
decide how a failed upload is classified.
"""

import io
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Optional
from urllib.parse import unquote, urlparse

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from hls_pipeline.core.config import Settings


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    url: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    cdn_domain: Optional[str] = None
    cdn_enabled: bool = False
    connect_timeout: float = 10.0
    read_timeout: float = 60.0


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file to storage."""

    @abstractmethod
    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to storage."""

    @abstractmethod
    def download(self, key: str, destination: str) -> bool:
        """Download an object to a local path."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a file from storage."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a file exists in storage."""

    @abstractmethod
    def get_read_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        expires_in: int = 3600,
    ) -> Optional[str]:
        """Get a time-limited read URL, or None if it cannot be issued."""

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Get the stable public URL of an object."""

    @abstractmethod
    def key_from_url(self, url: str) -> Optional[str]:
        """Recover the storage key from a URL issued by this backend."""

    @abstractmethod
    def list_files(self, prefix: str = "") -> list[str]:
        """List files with given prefix."""


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path).absolute()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.cdn_domain = config.cdn_domain
        self.cdn_enabled = config.cdn_enabled

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file to local storage."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file_path, dest_path)
            return StorageResult(
                success=True,
                key=key,
                url=self.public_url(key),
                file_size=dest_path.stat().st_size,
            )
        except OSError as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to local storage."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with open(dest_path, "wb") as f:
                shutil.copyfileobj(fileobj, f)
            return StorageResult(
                success=True,
                key=key,
                url=self.public_url(key),
                file_size=dest_path.stat().st_size,
            )
        except OSError as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def download(self, key: str, destination: str) -> bool:
        src_path = self._get_full_path(key)
        if not src_path.is_file():
            return False
        try:
            shutil.copy2(src_path, destination)
            return True
        except OSError:
            return False

    def delete(self, key: str) -> bool:
        file_path = self._get_full_path(key)
        try:
            file_path.unlink()
            return True
        except FileNotFoundError:
            return False

    def exists(self, key: str) -> bool:
        return self._get_full_path(key).is_file()

    def get_read_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        expires_in: int = 3600,
    ) -> Optional[str]:
        path = self._get_full_path(key)
        if not path.is_file():
            return None
        return path.as_uri()

    def public_url(self, key: str) -> str:
        if self.cdn_enabled and self.cdn_domain:
            return f"https://{self.cdn_domain}/{key}"
        return self._get_full_path(key).as_uri()

    def key_from_url(self, url: str) -> Optional[str]:
        parsed = urlparse(url)
        if parsed.scheme == "file":
            try:
                return Path(unquote(parsed.path)).relative_to(self.base_path).as_posix()
            except ValueError:
                return None
        if self.cdn_domain and parsed.netloc == self.cdn_domain:
            return unquote(parsed.path.lstrip("/")) or None
        return None

    def list_files(self, prefix: str = "") -> list[str]:
        """List files with given prefix."""
        search_path = self._get_full_path(prefix) if prefix else self.base_path
        if not search_path.exists():
            return []

        files = []
        for path in search_path.rglob("*"):
            if path.is_file():
                files.append(path.relative_to(self.base_path).as_posix())
        return sorted(files)


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            boto_config = BotoConfig(
                signature_version="s3v4",
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                retries={"max_attempts": 3, "mode": "standard"},
                # MinIO and other S3-compatible stores need path-style keys
                s3={"addressing_style": "path"} if self.config.endpoint_url else None,
            )
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
                "config": boto_config,
            }
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file to S3/MinIO."""
        try:
            file_size = os.path.getsize(file_path)
            with open(file_path, "rb") as f:
                response = self._get_client().put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    ContentType=content_type,
                )
            return StorageResult(
                success=True,
                key=key,
                url=self.public_url(key),
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload a file object to S3/MinIO."""
        try:
            fileobj.seek(0, 2)
            file_size = fileobj.tell()
            fileobj.seek(0)

            response = self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=fileobj,
                ContentType=content_type,
            )
            return StorageResult(
                success=True,
                key=key,
                url=self.public_url(key),
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def download(self, key: str, destination: str) -> bool:
        try:
            self._get_client().download_file(self.config.bucket, key, destination)
            return True
        except (BotoCoreError, ClientError, OSError):
            return False

    def delete(self, key: str) -> bool:
        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError):
            return False

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except ClientError:
            return False

    def get_read_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        expires_in: int = 3600,
    ) -> Optional[str]:
        """Get a presigned GET URL for the object."""
        params = {"Bucket": self.config.bucket, "Key": key}
        if content_type:
            params["ResponseContentType"] = content_type
        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError):
            return None

    def public_url(self, key: str) -> str:
        if self.config.cdn_enabled and self.config.cdn_domain:
            return f"https://{self.config.cdn_domain}/{key}"
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.config.bucket}/{key}"
        return f"https://{self.config.bucket}.s3.{self.config.region}.amazonaws.com/{key}"

    def key_from_url(self, url: str) -> Optional[str]:
        parsed = urlparse(url)
        path = unquote(parsed.path.lstrip("/"))
        if parsed.netloc.endswith(".amazonaws.com"):
            # Virtual-hosted style keeps the bucket in the host name
            if parsed.netloc.startswith(f"{self.config.bucket}."):
                return path or None
        if path.startswith(f"{self.config.bucket}/"):
            return path[len(self.config.bucket) + 1:] or None
        if self.config.cdn_domain and parsed.netloc == self.config.cdn_domain:
            return path or None
        return None

    def list_files(self, prefix: str = "") -> list[str]:
        """List files with given prefix."""
        paginator = self._get_client().get_paginator("list_objects_v2")
        files = []
        for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                files.append(obj["Key"])
        return files


class Storage:
    """Storage facade.

    Selects the backend from configuration. Instances are created by the
    worker runtime; there is no process-wide default instance.
    """

    def __init__(self, config: StorageConfig):
        self.config = config
        self._backend = self._create_backend(config)

    def _create_backend(self, config: StorageConfig) -> StorageBackend:
        backend_type = config.backend.lower()

        if backend_type == "local":
            return LocalStorage(config)
        elif backend_type in ("s3", "minio", "aws"):
            return S3Storage(config)
        else:
            raise ValueError(f"Unsupported storage backend: {backend_type}")

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        return self._backend.upload(file_path, key, content_type)

    def upload_fileobj(
        self,
        fileobj: BinaryIO,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        return self._backend.upload_fileobj(fileobj, key, content_type)

    def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Upload in-memory content under ``key``."""
        return self._backend.upload_fileobj(io.BytesIO(body), key, content_type)

    def download(self, key: str, destination: str) -> bool:
        return self._backend.download(key, destination)

    def delete(self, key: str) -> bool:
        return self._backend.delete(key)

    def exists(self, key: str) -> bool:
        return self._backend.exists(key)

    def get_read_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        expires_in: int = 3600,
    ) -> Optional[str]:
        return self._backend.get_read_url(key, content_type, expires_in)

    def public_url(self, key: str) -> str:
        return self._backend.public_url(key)

    def list_files(self, prefix: str = "") -> list[str]:
        return self._backend.list_files(prefix)

    def storage_key_from_url(self, url: str) -> Optional[str]:
        """Derive the object key from a stored asset URL.

        Args:
            url: Public, presigned or file URL previously issued for an object

        Returns:
            The key, or None if the URL does not belong to this storage
        """
        if not url:
            return None
        return self._backend.key_from_url(url)


def create_storage(settings: "Settings") -> Storage:
    """Build a storage facade from application settings."""
    return Storage(
        StorageConfig(
            backend=settings.STORAGE_BACKEND,
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            use_ssl=settings.STORAGE_USE_SSL,
            local_path=settings.LOCAL_STORAGE_PATH,
            cdn_domain=settings.CDN_DOMAIN,
            cdn_enabled=settings.CDN_ENABLED,
            connect_timeout=settings.STORAGE_CONNECT_TIMEOUT,
            read_timeout=settings.STORAGE_READ_TIMEOUT,
        )
    )
