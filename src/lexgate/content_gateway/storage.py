"""Backing object store adapters returning typed results.

``head``/``get`` never raise for backend problems; they return one of
:class:`ObjectFound` / :class:`MetadataFound`, :class:`ObjectMissing` or
:class:`StoreFailure`, and callers switch on the type.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..common.schemas import BucketClass, ObjectMetadata
from ..common.settings import GatewaySettings
from .ranges import ByteRange

LOGGER = structlog.get_logger("lexgate.storage")

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectBody:
    """Incremental reader over a blocking file-like body.

    Reads run in worker threads; ``close`` releases the underlying
    connection without draining what is left.
    """

    def __init__(self, raw, chunk_size: int = 64 * 1024, limit: Optional[int] = None) -> None:
        self._raw = raw
        self._chunk_size = max(1, chunk_size)
        self._remaining = limit
        self._closed = False

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        while not self._closed:
            size = self._chunk_size if self._remaining is None else min(self._chunk_size, self._remaining)
            if size <= 0:
                break
            chunk = await asyncio.to_thread(self._raw.read, size)
            if not chunk:
                break
            if self._remaining is not None:
                self._remaining -= len(chunk)
            yield chunk

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self._raw.close)


@dataclass(frozen=True)
class MetadataFound:
    metadata: ObjectMetadata


@dataclass(frozen=True)
class ObjectFound:
    body: ObjectBody
    content_length: Optional[int] = None


@dataclass(frozen=True)
class ObjectMissing:
    pass


@dataclass(frozen=True)
class StoreFailure:
    reason: str
    cause: Optional[BaseException] = None


HeadResult = Union[MetadataFound, ObjectMissing, StoreFailure]
GetResult = Union[ObjectFound, ObjectMissing, StoreFailure]


class ObjectStore:
    async def head(self, bucket_class: BucketClass, key: str) -> HeadResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(
        self, bucket_class: BucketClass, key: str, byte_range: Optional[ByteRange] = None
    ) -> GetResult:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


class _ObjectNotFound(Exception):
    pass


class _BackendUnavailable(Exception):
    pass


def _last_modified(value: object) -> Optional[str]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return format_datetime(value.astimezone(timezone.utc), usegmt=True)
    return str(value) if value else None


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return str(error.get("Code", "")) in NOT_FOUND_CODES or status_code == 404
    return False


class S3ObjectStore(ObjectStore):
    """S3-compatible backend (AWS S3, Cloudflare R2, MinIO)."""

    def __init__(self, settings: GatewaySettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
            "aws_access_key_id": settings.s3_access_key_id,
            "aws_secret_access_key": (
                settings.s3_secret_access_key.get_secret_value() if settings.s3_secret_access_key else None
            ),
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._buckets = {
            BucketClass.DOCUMENT: settings.document_bucket,
            BucketClass.VIDEO: settings.video_bucket,
        }
        self._chunk_size = settings.stream_chunk_bytes
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=max(1, settings.s3_circuit_breaker_failures),
            reset_timeout=max(0.0, settings.s3_circuit_breaker_reset_seconds),
        )

    async def head(self, bucket_class: BucketClass, key: str) -> HeadResult:
        bucket = self._buckets[bucket_class]
        try:
            response = await self._call_with_retry(self._client.head_object, Bucket=bucket, Key=key)
        except _ObjectNotFound:
            return ObjectMissing()
        except _BackendUnavailable as exc:
            return StoreFailure("head failed", exc.__cause__ or exc)

        size = int(response.get("ContentLength") or 0)
        if size <= 0:
            LOGGER.info("object_empty_treated_as_missing", bucket_class=bucket_class.value, key=key)
            return ObjectMissing()
        return MetadataFound(
            ObjectMetadata(
                size=size,
                content_type=response.get("ContentType") or None,
                etag=response.get("ETag"),
                last_modified=_last_modified(response.get("LastModified")),
            )
        )

    async def get(self, bucket_class: BucketClass, key: str, byte_range: Optional[ByteRange] = None) -> GetResult:
        kwargs: dict[str, object] = {"Bucket": self._buckets[bucket_class], "Key": key}
        if byte_range is not None:
            kwargs["Range"] = byte_range.header_value()
        try:
            response = await self._call_with_retry(self._client.get_object, **kwargs)
        except _ObjectNotFound:
            return ObjectMissing()
        except _BackendUnavailable as exc:
            return StoreFailure("get failed", exc.__cause__ or exc)

        body = response.get("Body")
        if body is None:
            return ObjectMissing()
        length = response.get("ContentLength")
        return ObjectFound(
            body=ObjectBody(body, chunk_size=self._chunk_size),
            content_length=int(length) if length is not None else None,
        )

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "endpoint": self._settings.s3_endpoint_url,
            "buckets": {bucket_class.value: name for bucket_class, name in self._buckets.items()},
            "circuit_open": self._breaker.is_open,
        }

    async def _call_with_retry(self, func: Callable[..., dict], **kwargs) -> dict:
        if not self._breaker.allow_request():
            raise _BackendUnavailable("circuit open")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except (ClientError, BotoCoreError) as exc:
                if _is_not_found(exc):
                    self._breaker.record_success()
                    raise _ObjectNotFound() from exc
                attempt += 1
                if attempt > self._max_retries:
                    self._breaker.record_failure()
                    raise _BackendUnavailable("retries exhausted") from exc
                delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
                LOGGER.debug("object_store_retry", attempt=attempt, delay=delay, error=repr(exc))
                if delay:
                    await asyncio.sleep(delay)


class LocalObjectStore(ObjectStore):
    """Filesystem backend for development: ``<root>/<bucket>/<key>``."""

    def __init__(self, settings: GatewaySettings, root: Path):
        self._root = root.resolve()
        self._buckets = {
            BucketClass.DOCUMENT: settings.document_bucket,
            BucketClass.VIDEO: settings.video_bucket,
        }
        self._chunk_size = settings.stream_chunk_bytes

    def _path(self, bucket_class: BucketClass, key: str) -> Path:
        bucket_root = (self._root / self._buckets[bucket_class]).resolve()
        candidate = bucket_root.joinpath(*key.split("/")).resolve(strict=False)
        if not candidate.is_relative_to(bucket_root):
            raise ValueError("key escapes bucket root")
        return candidate

    async def head(self, bucket_class: BucketClass, key: str) -> HeadResult:
        try:
            path = self._path(bucket_class, key)
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            return ObjectMissing()
        except (OSError, ValueError) as exc:
            return StoreFailure("head failed", exc)
        if not path.is_file() or stat.st_size <= 0:
            return ObjectMissing()
        return MetadataFound(
            ObjectMetadata(
                size=stat.st_size,
                etag=f'"{int(stat.st_mtime_ns):x}-{stat.st_size:x}"',
                last_modified=_last_modified(datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)),
            )
        )

    async def get(self, bucket_class: BucketClass, key: str, byte_range: Optional[ByteRange] = None) -> GetResult:
        try:
            path = self._path(bucket_class, key)
            handle = await asyncio.to_thread(path.open, "rb")
        except FileNotFoundError:
            return ObjectMissing()
        except (OSError, ValueError) as exc:
            return StoreFailure("get failed", exc)
        size = (await asyncio.to_thread(os.fstat, handle.fileno())).st_size
        limit = None
        if byte_range is not None:
            await asyncio.to_thread(handle.seek, byte_range.start)
            limit = max(0, min(byte_range.length, size - byte_range.start))
        return ObjectFound(
            body=ObjectBody(handle, chunk_size=self._chunk_size, limit=limit),
            content_length=size if limit is None else limit,
        )

    def status(self) -> dict[str, object]:
        return {"backend": "local", "root": str(self._root)}


def build_object_store(settings: GatewaySettings) -> ObjectStore:
    if settings.local_storage_path is not None:
        return LocalObjectStore(settings, settings.local_storage_path)
    return S3ObjectStore(settings)
