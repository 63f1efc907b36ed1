"""
Remote blob storage for encrypted snapshots.

Transports move opaque bytes by name and translate provider failures
into the sync error kinds. Retry and encryption happen above this layer.

S3 bucket layout:
  {tenant}/{tenant}_{timestamp}.enc                 full backups
  {tenant}/{tenant}_{timestamp}.{table}.sync.enc    per-table uploads
"""

import errno
import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError, ClientError, ConnectionClosedError, ConnectTimeoutError,
    EndpointConnectionError, NoCredentialsError, PartialCredentialsError, ReadTimeoutError,
)

from clinicsync.config.settings import Settings, settings as default_settings
from clinicsync.sync.backups import BACKUP_SUFFIX, describe
from clinicsync.sync.errors import (
    AuthError, AuthErrorKind, NetworkError, NetworkErrorKind, StorageError,
    StorageErrorKind, SyncError, error_from_status,
)
from clinicsync.sync.models import BackupDescriptor, BackupKind

logger = logging.getLogger(__name__)


class StorageTransport(ABC):
    """upload / download / list / delete / latest over named blobs."""

    @abstractmethod
    def upload(self, name: str, data: bytes) -> str:
        """Store ``data`` under ``name``; return the object id."""

    @abstractmethod
    def download(self, object_id: str) -> bytes:
        ...

    @abstractmethod
    def list(self) -> list[BackupDescriptor]:
        ...

    @abstractmethod
    def delete(self, object_id: str) -> None:
        ...

    def latest(self) -> Optional[BackupDescriptor]:
        """Newest full backup, if any."""
        backups = [d for d in self.list() if d.kind == BackupKind.backup]
        if not backups:
            return None
        return max(backups, key=lambda d: (d.created_at, d.name))


# ── Error translation ───────────────────────────────────────────────────

_NOT_FOUND = {"NoSuchKey", "NoSuchBucket", "NotFound", "404"}
_PERMISSION = {"AccessDenied", "AllAccessDisabled", "403"}
_BAD_CREDENTIALS = {"InvalidAccessKeyId", "SignatureDoesNotMatch", "InvalidToken"}
_EXPIRED = {"ExpiredToken", "TokenRefreshRequired", "RequestExpired"}
_RATE_LIMITED = {"SlowDown", "Throttling", "ThrottlingException", "TooManyRequests", "RequestLimitExceeded"}
_QUOTA = {"QuotaExceeded", "ServiceQuotaExceeded"}


def translate_boto_error(e: Exception, context: Optional[dict] = None) -> SyncError:
    ctx = dict(context or {})
    if isinstance(e, ClientError):
        error = e.response.get("Error", {})
        code = str(error.get("Code", ""))
        message = error.get("Message") or str(e)
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        ctx.update({"code": code, "status": status})
        if code in _NOT_FOUND:
            return StorageError(StorageErrorKind.not_found, message, ctx)
        if code in _PERMISSION:
            return AuthError(AuthErrorKind.permission_denied, message, ctx)
        if code in _BAD_CREDENTIALS:
            return AuthError(AuthErrorKind.invalid_credentials, message, ctx)
        if code in _EXPIRED:
            return AuthError(AuthErrorKind.token_expired, message, ctx)
        if code == "AccountProblem":
            return AuthError(AuthErrorKind.account_disabled, message, ctx)
        if code in _RATE_LIMITED:
            return NetworkError(NetworkErrorKind.rate_limited, message, ctx)
        if code in _QUOTA:
            return StorageError(StorageErrorKind.quota_exceeded, message, ctx)
        if code == "RequestTimeout":
            return NetworkError(NetworkErrorKind.timeout, message, ctx)
        if status:
            return error_from_status(int(status), message, ctx)
        return NetworkError(NetworkErrorKind.server_error, message, ctx)
    if isinstance(e, (ConnectTimeoutError, ReadTimeoutError)):
        return NetworkError(NetworkErrorKind.timeout, str(e), ctx)
    if isinstance(e, ConnectionClosedError):
        return NetworkError(NetworkErrorKind.connection_refused, str(e), ctx)
    if isinstance(e, EndpointConnectionError):
        return NetworkError(NetworkErrorKind.no_connectivity, str(e), ctx)
    if isinstance(e, (NoCredentialsError, PartialCredentialsError)):
        return AuthError(AuthErrorKind.invalid_credentials, str(e), ctx)
    return NetworkError(NetworkErrorKind.server_error, str(e), ctx)


def translate_os_error(e: OSError, context: Optional[dict] = None) -> SyncError:
    ctx = dict(context or {})
    if isinstance(e, FileNotFoundError):
        return StorageError(StorageErrorKind.not_found, str(e), ctx)
    if isinstance(e, PermissionError):
        return StorageError(StorageErrorKind.access_denied, str(e), ctx)
    if e.errno == errno.ENOSPC:
        return StorageError(StorageErrorKind.insufficient_space, str(e), ctx)
    if e.errno == getattr(errno, "EDQUOT", None):
        return StorageError(StorageErrorKind.quota_exceeded, str(e), ctx)
    return StorageError(StorageErrorKind.access_denied, str(e), ctx)


@contextmanager
def _boto_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        raise translate_boto_error(e, {"operation": operation, "key": key}) from e


@contextmanager
def _os_errors(operation: str, path: Path) -> Iterator[None]:
    try:
        yield
    except OSError as e:
        raise translate_os_error(e, {"operation": operation, "path": str(path)}) from e


# ── S3 ──────────────────────────────────────────────────────────────────

class S3Transport(StorageTransport):
    """S3-compatible storage, one prefix per tenant."""

    def __init__(
        self,
        tenant_id: str,
        bucket: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: Optional[str] = None,
        client=None,
    ):
        self._client = client
        self._tenant_id = tenant_id
        self._bucket = bucket or default_settings.sync_s3_bucket
        self._endpoint_url = endpoint_url
        self._access_key = access_key
        self._secret_key = secret_key
        self._region = region or default_settings.sync_s3_region

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self._endpoint_url,
                aws_access_key_id=self._access_key,
                aws_secret_access_key=self._secret_key,
                region_name=self._region,
                config=Config(signature_version="s3v4"),
            )
        return self._client

    def _key(self, name: str) -> str:
        return f"{self._tenant_id}/{name}"

    def upload(self, name: str, data: bytes) -> str:
        key = self._key(name)
        with _boto_errors("upload", key):
            self.client.put_object(Bucket=self._bucket, Key=key, Body=data)
        logger.info("Uploaded %s (%d bytes)", key, len(data))
        return key

    def download(self, object_id: str) -> bytes:
        with _boto_errors("download", object_id):
            resp = self.client.get_object(Bucket=self._bucket, Key=object_id)
            data = resp["Body"].read()
        logger.debug("Downloaded %s (%d bytes)", object_id, len(data))
        return data

    def list(self) -> list[BackupDescriptor]:
        prefix = self._key("")
        descriptors = []
        with _boto_errors("list", prefix):
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    d = describe(obj["Key"], obj["Key"], obj.get("Size", 0))
                    if d is not None:
                        descriptors.append(d)
        return descriptors

    def delete(self, object_id: str) -> None:
        with _boto_errors("delete", object_id):
            self.client.delete_object(Bucket=self._bucket, Key=object_id)
        logger.info("Deleted %s", object_id)

    def ensure_bucket(self) -> None:
        """Create the sync bucket if it doesn't exist."""
        try:
            self.client.head_bucket(Bucket=self._bucket)
        except ClientError:
            with _boto_errors("create_bucket", self._bucket):
                self.client.create_bucket(Bucket=self._bucket)
            logger.info("Created sync bucket: %s", self._bucket)


# ── Local directory ─────────────────────────────────────────────────────

class LocalDirectoryTransport(StorageTransport):
    """Stores blobs as files in one directory (a mounted share, a USB drive, tests)."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, name: str) -> Path:
        if not name or Path(name).name != name:
            raise StorageError(StorageErrorKind.access_denied, f"Invalid object name: {name!r}")
        return self._root / name

    def upload(self, name: str, data: bytes) -> str:
        path = self._path(name)
        tmp = path.with_name(path.name + ".partial")
        with _os_errors("upload", path):
            self._root.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
        logger.info("Stored %s (%d bytes)", path, len(data))
        return name

    def download(self, object_id: str) -> bytes:
        path = self._path(object_id)
        with _os_errors("download", path):
            return path.read_bytes()

    def list(self) -> list[BackupDescriptor]:
        if not self._root.exists():
            return []
        descriptors = []
        with _os_errors("list", self._root):
            for path in sorted(self._root.glob(f"*{BACKUP_SUFFIX}")):
                d = describe(path.name, path.name, path.stat().st_size)
                if d is not None:
                    descriptors.append(d)
        return descriptors

    def delete(self, object_id: str) -> None:
        path = self._path(object_id)
        with _os_errors("delete", path):
            path.unlink()
        logger.info("Deleted %s", path)


def build_transport(cfg: Settings = default_settings) -> StorageTransport:
    if cfg.storage_backend == "s3":
        return S3Transport(
            tenant_id=cfg.tenant_id,
            bucket=cfg.sync_s3_bucket,
            endpoint_url=cfg.sync_s3_endpoint_url,
            access_key=cfg.sync_s3_access_key,
            secret_key=cfg.sync_s3_secret_key,
            region=cfg.sync_s3_region,
        )
    return LocalDirectoryTransport(cfg.local_storage_dir)
