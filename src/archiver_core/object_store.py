"""S3-compatible object store client for content-addressed chunks."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple, cast

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .chunk import Chunk, Codec, DecodingError, EncodingError, deserialize, key, serialize
from .metrics import (
    ARCHIVER_BUCKETS_CREATED_TOTAL,
    ARCHIVER_DELETES_TOTAL,
    ARCHIVER_DOWNLOADS_TOTAL,
    ARCHIVER_LISTED_PAGES_TOTAL,
    ARCHIVER_LISTINGS_TOTAL,
    ARCHIVER_STATUS_MISMATCHES_TOTAL,
    ARCHIVER_UPLOAD_BYTES_TOTAL,
    ARCHIVER_UPLOAD_SECONDS,
    ARCHIVER_UPLOADS_TOTAL,
)

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
_PERSISTENT_CODES = {
    "AccessDenied",
    "403",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "InvalidBucketName",
    "BucketAlreadyExists",
    "NoSuchBucket",
}
_TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
    "503",
    "500",
}


class StorageError(Exception):
    """Raised when a remote object store operation fails.

    ``transient`` marks failures worth retrying (timeouts, throttling, 5xx);
    everything else (credentials, bucket names, missing objects) is persistent.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.code = code
        self.status = status


class StatusMismatch(StorageError):
    """Remote operation completed but reported a non-success status."""

    def __init__(self, operation: str, bucket: str, path: str | None, status: int) -> None:
        target = f"{bucket}/{path}" if path else bucket
        super().__init__(
            f"{operation} on {target} returned status {status}",
            transient=status >= 500,
            status=status,
        )
        self.operation = operation
        self.bucket = bucket
        self.path = path


class StatusPolicy(str, Enum):
    """How a non-success status from the store is treated."""

    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(frozen=True)
class S3Settings:
    """Connection settings for an S3-compatible endpoint (path-style addressing)."""

    endpoint: Optional[str] = None
    region: str = DEFAULT_REGION
    access_key: Optional[str] = field(default=None, repr=False)
    secret_key: Optional[str] = field(default=None, repr=False)
    strict: bool = True
    connect_timeout: float = 5.0
    read_timeout: float = 30.0

    @property
    def policy(self) -> StatusPolicy:
        return StatusPolicy.STRICT if self.strict else StatusPolicy.LENIENT


class ObjectStoreBackend(Protocol):
    """Remote capabilities the client needs; every call reports the store's HTTP status."""

    def bucket_exists(self, bucket: str) -> bool: ...

    def create_bucket(self, bucket: str) -> int: ...

    def put(self, bucket: str, key: str, body: bytes) -> int: ...

    def get(self, bucket: str, key: str) -> Tuple[int, bytes]: ...

    def delete(self, bucket: str, key: str) -> int: ...

    def list_pages(self, bucket: str, prefix: str) -> Iterator[Tuple[int, List[str]]]: ...


def normalize_prefix(prefix: str) -> str:
    """Ensure prefix is either empty or ends with a single '/' and has no leading '/'."""

    stripped = prefix.strip("/")
    if not stripped:
        return ""
    return stripped + "/"


def join_path(prefix: str, name: str) -> str:
    return f"{normalize_prefix(prefix)}{name.lstrip('/')}"


def _status_of(response: Any) -> int:
    if not response:
        return 200
    return int(response.get("ResponseMetadata", {}).get("HTTPStatusCode", 200))


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", "unknown"))


def _is_not_found(exc: ClientError) -> bool:
    return _error_code(exc) in _NOT_FOUND_CODES


def _storage_error(exc: Exception, operation: str, bucket: str, key: str | None = None) -> StorageError:
    target = f"{bucket}/{key}" if key else bucket
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _PERSISTENT_CODES:
            transient = False
        elif code in _TRANSIENT_CODES:
            transient = True
        else:
            transient = isinstance(status, int) and status >= 500
        message = exc.response.get("Error", {}).get("Message", str(exc))
        return StorageError(
            f"{operation} failed for {target} (code={code}): {message}",
            transient=transient,
            code=code,
            status=status if isinstance(status, int) else None,
        )
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return StorageError(f"{operation} failed for {target}: {exc}", transient=True)
    if isinstance(exc, (BotoCoreError, OSError)):
        return StorageError(f"{operation} failed for {target}: {exc}", transient=True)
    return StorageError(f"{operation} failed for {target}: {exc}")


class Boto3Backend:
    """Thin wrapper around a boto3 S3 client using path-style addressing."""

    def __init__(self, settings: S3Settings, client: Any | None = None, *, page_size: int | None = None) -> None:
        self._settings = settings
        self._page_size = page_size
        self._client = client or boto3.client(
            "s3",
            region_name=settings.region,
            endpoint_url=settings.endpoint,
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            config=BotoConfig(
                s3={"addressing_style": "path"},
                connect_timeout=settings.connect_timeout,
                read_timeout=settings.read_timeout,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )
        logger.debug("Created S3 backend endpoint=%s region=%s", settings.endpoint, settings.region)

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self._client.head_bucket(Bucket=bucket)
            return True
        except ClientError as exc:
            if _is_not_found(exc):
                return False
            raise _storage_error(exc, "head_bucket", bucket) from exc
        except (BotoCoreError, OSError) as exc:
            raise _storage_error(exc, "head_bucket", bucket) from exc

    def create_bucket(self, bucket: str) -> int:
        kwargs: Dict[str, Any] = {"Bucket": bucket}
        if self._settings.region and self._settings.region != DEFAULT_REGION:
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._settings.region}
        try:
            return _status_of(self._client.create_bucket(**kwargs))
        except ClientError as exc:
            if _error_code(exc) == "BucketAlreadyOwnedByYou":
                return 200
            raise _storage_error(exc, "create_bucket", bucket) from exc
        except (BotoCoreError, OSError) as exc:
            raise _storage_error(exc, "create_bucket", bucket) from exc

    def put(self, bucket: str, key: str, body: bytes) -> int:
        try:
            return _status_of(self._client.put_object(Bucket=bucket, Key=key, Body=body))
        except (ClientError, BotoCoreError, OSError) as exc:
            raise _storage_error(exc, "put_object", bucket, key) from exc

    def get(self, bucket: str, key: str) -> Tuple[int, bytes]:
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return _status_of(response), response["Body"].read()
        except (ClientError, BotoCoreError, OSError) as exc:
            raise _storage_error(exc, "get_object", bucket, key) from exc

    def delete(self, bucket: str, key: str) -> int:
        try:
            return _status_of(self._client.delete_object(Bucket=bucket, Key=key))
        except ClientError as exc:
            if _error_code(exc) in {"NoSuchKey", "404", "NotFound"}:
                return 204
            raise _storage_error(exc, "delete_object", bucket, key) from exc
        except (BotoCoreError, OSError) as exc:
            raise _storage_error(exc, "delete_object", bucket, key) from exc

    def list_pages(self, bucket: str, prefix: str) -> Iterator[Tuple[int, List[str]]]:
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            kwargs: Dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
            if self._page_size:
                kwargs["PaginationConfig"] = {"PageSize": self._page_size}
            for page in paginator.paginate(**kwargs):
                keys = [item["Key"] for item in page.get("Contents", []) if "Key" in item]
                yield _status_of(page), keys
        except (ClientError, BotoCoreError, OSError) as exc:
            raise _storage_error(exc, "list_objects_v2", bucket, prefix or None) from exc


class ObjectStoreClient:
    """Chunk-level operations over an object store backend.

    The client holds no mutable state beyond its backend and policy, so one
    instance can be shared by every store job.
    """

    def __init__(
        self,
        backend: ObjectStoreBackend | S3Settings,
        *,
        policy: StatusPolicy | None = None,
    ) -> None:
        if isinstance(backend, S3Settings):
            self._backend: ObjectStoreBackend = Boto3Backend(backend)
            default_policy = backend.policy
        else:
            self._backend = backend
            default_policy = StatusPolicy.STRICT
        self._policy = policy or default_policy

    @property
    def policy(self) -> StatusPolicy:
        return self._policy

    def ensure_bucket(self, name: str, create_if_missing: bool) -> None:
        """Make sure ``name`` exists, creating it when asked; never re-creates an existing bucket."""

        if self._backend.bucket_exists(name):
            return
        if not create_if_missing:
            logger.debug("Bucket missing and creation not requested bucket=%s", name)
            return
        status = self._backend.create_bucket(name)
        self._check_status("create_bucket", status, {200}, name)
        ARCHIVER_BUCKETS_CREATED_TOTAL.inc()
        logger.info("Created bucket bucket=%s", name)

    def upload_chunk(self, chunk: Chunk, bucket: str, path_prefix: str, codec: Codec | str) -> str:
        """Store ``chunk`` under ``path_prefix/<content key>`` and return the object path."""

        try:
            resolved = Codec.parse(codec)
        except ValueError as exc:
            raise EncodingError(str(exc)) from exc
        start = time.perf_counter()
        status_label = "error"
        try:
            self.ensure_bucket(bucket, True)
            data = serialize(chunk, resolved)
            path = join_path(path_prefix, key(chunk, resolved))
            status = self._backend.put(bucket, path, data)
            self._check_status("put_object", status, {200}, bucket, path)
            status_label = "ok"
        finally:
            ARCHIVER_UPLOADS_TOTAL.labels(codec=resolved.value, status=status_label).inc()
            ARCHIVER_UPLOAD_SECONDS.labels(codec=resolved.value).observe(time.perf_counter() - start)
        ARCHIVER_UPLOAD_BYTES_TOTAL.labels(codec=resolved.value).inc(len(data))
        logger.info(
            "Uploaded chunk bucket=%s path=%s codec=%s size=%d",
            bucket,
            path,
            resolved.value,
            len(data),
        )
        return path

    def download_chunk(self, bucket: str, path: str, codec: Codec | str) -> Chunk:
        try:
            resolved = Codec.parse(codec)
        except ValueError as exc:
            raise DecodingError(str(exc)) from exc
        status_label = "error"
        try:
            status, data = self._backend.get(bucket, path)
            self._check_status("get_object", status, {200}, bucket, path)
            chunk = deserialize(data, resolved)
            status_label = "ok"
        finally:
            ARCHIVER_DOWNLOADS_TOTAL.labels(codec=resolved.value, status=status_label).inc()
        logger.debug("Downloaded chunk bucket=%s path=%s codec=%s", bucket, path, resolved.value)
        return chunk

    def delete_chunk(self, bucket: str, path: str) -> None:
        status_label = "error"
        try:
            status = self._backend.delete(bucket, path)
            self._check_status("delete_object", status, {200, 204}, bucket, path)
            status_label = "ok"
        finally:
            ARCHIVER_DELETES_TOTAL.labels(status=status_label).inc()
        logger.info("Deleted chunk bucket=%s path=%s", bucket, path)

    def list_paths(self, bucket: str, prefix: str) -> List[str]:
        """Return every object path under ``prefix`` across all listing pages, without duplicates."""

        seen: Dict[str, None] = {}
        pages = 0
        status_label = "error"
        try:
            for status, keys in self._backend.list_pages(bucket, prefix):
                pages += 1
                self._check_status("list_objects_v2", status, {200}, bucket, prefix or None)
                for item in keys:
                    seen.setdefault(item, None)
            status_label = "ok"
        finally:
            ARCHIVER_LISTINGS_TOTAL.labels(status=status_label).inc()
            ARCHIVER_LISTED_PAGES_TOTAL.inc(pages)
        logger.debug("Listed objects bucket=%s prefix=%s pages=%d count=%d", bucket, prefix, pages, len(seen))
        return list(seen)

    def put_bytes(self, bucket: str, path: str, body: bytes) -> None:
        self.ensure_bucket(bucket, True)
        status = self._backend.put(bucket, path, body)
        self._check_status("put_object", status, {200}, bucket, path)

    def get_bytes(self, bucket: str, path: str) -> Optional[bytes]:
        """Return the object body, or None if the bucket or object does not exist."""

        try:
            status, data = self._backend.get(bucket, path)
        except StorageError as exc:
            if exc.code in _NOT_FOUND_CODES:
                return None
            raise
        self._check_status("get_object", status, {200}, bucket, path)
        return data

    def _check_status(
        self,
        operation: str,
        status: int,
        expected: set[int],
        bucket: str,
        path: str | None = None,
    ) -> None:
        if status in expected:
            return
        mismatch = StatusMismatch(operation, bucket, path, status)
        ARCHIVER_STATUS_MISMATCHES_TOTAL.labels(operation=operation, policy=self._policy.value).inc()
        if self._policy is StatusPolicy.STRICT:
            raise mismatch
        logger.warning(
            "Unexpected status from object store operation=%s bucket=%s path=%s status=%d",
            operation,
            bucket,
            path,
            status,
        )


def build_client(settings: S3Settings, client: Any | None = None) -> ObjectStoreClient:
    """Create an :class:`ObjectStoreClient` over boto3, optionally reusing an existing boto3 client."""

    return ObjectStoreClient(cast(ObjectStoreBackend, Boto3Backend(settings, client)), policy=settings.policy)
