"""Response construction for streamed objects."""

from __future__ import annotations

import re
from typing import AsyncIterator, Optional
from urllib.parse import quote

import structlog
from fastapi import status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from ..common.metrics import GLOBAL_REGISTRY, Gauge, LabeledCounter
from ..common.schemas import BucketClass, ObjectMetadata
from ..common.security import filename_from_key
from .ranges import ByteRange
from .storage import ObjectBody

LOGGER = structlog.get_logger("lexgate.streaming")

BYTES_SERVED = GLOBAL_REGISTRY.register(
    LabeledCounter("lexgate_bytes_served_total", "bucket", "Bytes streamed to clients")
)
STREAMS_ABORTED = GLOBAL_REGISTRY.register(
    LabeledCounter("lexgate_streams_aborted_total", "bucket", "Streams closed before the body was exhausted")
)
ACTIVE_STREAMS = GLOBAL_REGISTRY.register(Gauge("lexgate_active_streams", "Object bodies currently being streamed"))

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "m4v": "video/x-m4v",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "mkv": "video/x-matroska",
    "m3u8": "application/vnd.apple.mpegurl",
    "ts": "video/mp2t",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "doc": "application/msword",
}

IMMUTABLE_MAX_AGE_SECONDS = 31_536_000

# A path segment (or filename prefix) that pins the object version: v3/, 1700000000000-file.pdf
_VERSIONED_SEGMENT = re.compile(r"(?:^|/)(?:v\d+|\d{10,13})(?:[-_./]|$)")


def content_type_for(key: str, metadata: Optional[ObjectMetadata] = None) -> str:
    if metadata is not None and metadata.content_type:
        return metadata.content_type
    _, ext = filename_from_key(key)
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


def cache_control_for(key: str, private_max_age: int = 60) -> str:
    if _VERSIONED_SEGMENT.search(key):
        return f"private, max-age={IMMUTABLE_MAX_AGE_SECONDS}, immutable"
    return f"private, max-age={max(0, private_max_age)}"


def content_disposition_for(key: str, content_type: Optional[str] = None) -> str:
    """Inline only for PDFs served as PDFs; non-ASCII names also get an RFC 5987 ``filename*``."""
    filename, ext = filename_from_key(key)
    resolved_type = content_type or CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)
    disposition = "inline" if ext == "pdf" and resolved_type == "application/pdf" else "attachment"
    if filename.isascii():
        return f'{disposition}; filename="{filename}"'
    fallback = "".join(char if char.isascii() else "_" for char in filename)
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


async def iter_body(body: ObjectBody, bucket_class: BucketClass) -> AsyncIterator[bytes]:
    """Yield backend chunks; the body is closed however iteration ends."""
    sent = 0
    completed = False
    ACTIVE_STREAMS.inc()
    try:
        async for chunk in body.iter_chunks():
            sent += len(chunk)
            yield chunk
        completed = True
    finally:
        ACTIVE_STREAMS.dec()
        BYTES_SERVED.inc(bucket_class.value, sent)
        if not completed:
            STREAMS_ABORTED.inc(bucket_class.value)
            LOGGER.info("stream_aborted", bucket_class=bucket_class.value, bytes_sent=sent)
        await body.close()


def build_stream_response(
    body: ObjectBody,
    *,
    key: str,
    bucket_class: BucketClass,
    metadata: ObjectMetadata,
    byte_range: Optional[ByteRange],
    private_max_age: int = 60,
) -> StreamingResponse:
    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": cache_control_for(key, private_max_age),
        "X-Content-Type-Options": "nosniff",
    }
    if metadata.etag:
        headers["ETag"] = metadata.etag
    if metadata.last_modified:
        headers["Last-Modified"] = metadata.last_modified
    content_type = content_type_for(key, metadata)
    if bucket_class is BucketClass.DOCUMENT:
        headers["Content-Disposition"] = content_disposition_for(key, content_type)

    if byte_range is None:
        status_code = status.HTTP_200_OK
        headers["Content-Length"] = str(metadata.size)
    else:
        status_code = status.HTTP_206_PARTIAL_CONTENT
        headers["Content-Length"] = str(byte_range.length)
        headers["Content-Range"] = byte_range.content_range(metadata.size)

    return StreamingResponse(
        iter_body(body, bucket_class),
        status_code=status_code,
        media_type=content_type,
        headers=headers,
        background=BackgroundTask(body.close),
    )
