from __future__ import annotations

import io
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from lexgate.common.schemas import BucketClass
from lexgate.content_gateway.ranges import ByteRange
from lexgate.content_gateway.storage import (
    LocalObjectStore,
    MetadataFound,
    ObjectBody,
    ObjectFound,
    ObjectMissing,
    S3ObjectStore,
    StoreFailure,
    build_object_store,
)

from tests.utils.gateway import make_settings, write_object


def _client_error(code: str, status: int, operation: str = "HeadObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": "boom"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class TrackingBody(io.BytesIO):
    def __init__(self, payload: bytes) -> None:
        super().__init__(payload)
        self.read_sizes: list[int] = []

    def read(self, size=-1):  # noqa: ANN001
        self.read_sizes.append(size)
        return super().read(size)


class FakeClient:
    def __init__(self) -> None:
        self.head_calls: list[dict] = []
        self.get_calls: list[dict] = []
        self.failures_remaining = 0
        self.failure = _client_error("SlowDown", 503)
        self.missing = False
        self.content_length = 1_000
        self.payload = b"x" * 1_000
        self.bodies: list[TrackingBody] = []

    def _maybe_fail(self, operation: str) -> None:
        if self.missing:
            raise _client_error("NoSuchKey" if operation == "GetObject" else "404", 404, operation)
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.failure

    def head_object(self, **kwargs):
        self.head_calls.append(kwargs)
        self._maybe_fail("HeadObject")
        return {
            "ContentLength": self.content_length,
            "ContentType": "video/mp4",
            "ETag": '"etag-1"',
            "LastModified": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        }

    def get_object(self, **kwargs):
        self.get_calls.append(kwargs)
        self._maybe_fail("GetObject")
        body = TrackingBody(self.payload)
        self.bodies.append(body)
        return {"Body": body, "ContentLength": len(self.payload), "ContentType": "video/mp4"}


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeClient()
    session_kwargs: list[dict] = []

    class DummySession:
        def client(self, *_args, **kwargs):  # noqa: D401 - mimic boto3 session
            session_kwargs.append(kwargs)
            return client

    monkeypatch.setattr("lexgate.content_gateway.storage.boto3.session.Session", lambda: DummySession())
    client.session_kwargs = session_kwargs
    return client


def _s3_settings(**overrides):
    values = {"s3_endpoint_url": "https://r2.example.com", "s3_max_retries": 2}
    values.update(overrides)
    return make_settings(**values)


@pytest.mark.asyncio
async def test_head_returns_metadata(fake_client):
    store = S3ObjectStore(_s3_settings())
    result = await store.head(BucketClass.VIDEO, "videos/abc.mp4")

    assert isinstance(result, MetadataFound)
    assert result.metadata.size == 1_000
    assert result.metadata.content_type == "video/mp4"
    assert result.metadata.etag == '"etag-1"'
    assert result.metadata.last_modified == "Wed, 01 May 2024 12:00:00 GMT"
    assert fake_client.head_calls == [{"Bucket": "videos", "Key": "videos/abc.mp4"}]
    assert fake_client.session_kwargs[0]["endpoint_url"] == "https://r2.example.com"


@pytest.mark.asyncio
async def test_bucket_class_selects_bucket(fake_client):
    store = S3ObjectStore(_s3_settings())
    await store.head(BucketClass.DOCUMENT, "books/a.pdf")
    assert fake_client.head_calls[-1]["Bucket"] == "documents"


@pytest.mark.asyncio
async def test_not_found_codes_map_to_missing_without_retry(fake_client):
    store = S3ObjectStore(_s3_settings())
    fake_client.missing = True

    assert isinstance(await store.head(BucketClass.VIDEO, "videos/none.mp4"), ObjectMissing)
    assert isinstance(await store.get(BucketClass.VIDEO, "videos/none.mp4"), ObjectMissing)
    assert len(fake_client.head_calls) == 1
    assert len(fake_client.get_calls) == 1


@pytest.mark.asyncio
async def test_zero_length_object_is_missing(fake_client):
    fake_client.content_length = 0
    store = S3ObjectStore(_s3_settings())
    assert isinstance(await store.head(BucketClass.VIDEO, "videos/empty.mp4"), ObjectMissing)


@pytest.mark.asyncio
async def test_retries_until_success(fake_client):
    store = S3ObjectStore(_s3_settings(s3_max_retries=2))
    fake_client.failures_remaining = 2

    result = await store.head(BucketClass.VIDEO, "videos/abc.mp4")

    assert isinstance(result, MetadataFound)
    assert len(fake_client.head_calls) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_return_failure(fake_client):
    store = S3ObjectStore(_s3_settings(s3_max_retries=1))
    fake_client.failures_remaining = 5

    result = await store.get(BucketClass.VIDEO, "videos/abc.mp4")

    assert isinstance(result, StoreFailure)
    assert isinstance(result.cause, ClientError)
    assert len(fake_client.get_calls) == 2


@pytest.mark.asyncio
async def test_circuit_breaker_blocks_after_failures(monkeypatch, fake_client):
    current_time = [0.0]
    monkeypatch.setattr("lexgate.content_gateway.storage.time.monotonic", lambda: current_time[0])

    store = S3ObjectStore(
        _s3_settings(s3_max_retries=0, s3_circuit_breaker_failures=2, s3_circuit_breaker_reset_seconds=5.0)
    )
    fake_client.failures_remaining = 10

    assert isinstance(await store.head(BucketClass.VIDEO, "k"), StoreFailure)
    assert isinstance(await store.head(BucketClass.VIDEO, "k"), StoreFailure)
    first_two_calls = len(fake_client.head_calls)

    assert isinstance(await store.head(BucketClass.VIDEO, "k"), StoreFailure)
    assert len(fake_client.head_calls) == first_two_calls
    assert store.status()["circuit_open"] is True

    fake_client.failures_remaining = 0
    current_time[0] += 6.0

    assert isinstance(await store.head(BucketClass.VIDEO, "k"), MetadataFound)
    assert len(fake_client.head_calls) == first_two_calls + 1


@pytest.mark.asyncio
async def test_get_forwards_range_and_streams_in_chunks(fake_client):
    store = S3ObjectStore(_s3_settings(stream_chunk_bytes=256))
    fake_client.payload = bytes(range(100))

    result = await store.get(BucketClass.VIDEO, "videos/abc.mp4", ByteRange(0, 99))

    assert isinstance(result, ObjectFound)
    assert result.content_length == 100
    assert fake_client.get_calls[0]["Range"] == "bytes=0-99"
    chunks = [chunk async for chunk in result.body.iter_chunks()]
    assert b"".join(chunks) == bytes(range(100))
    await result.body.close()
    assert fake_client.bodies[0].closed


@pytest.mark.asyncio
async def test_object_body_close_abandons_remaining_bytes():
    raw = TrackingBody(b"a" * 10_000)
    body = ObjectBody(raw, chunk_size=1_000)

    iterator = body.iter_chunks()
    assert await iterator.__anext__() == b"a" * 1_000
    await body.close()
    await iterator.aclose()

    assert raw.closed
    assert raw.read_sizes == [1_000]


@pytest.mark.asyncio
async def test_local_store_serves_ranges(tmp_path):
    settings = make_settings(local_storage_path=tmp_path)
    write_object(tmp_path, "videos", "videos/abc.mp4", bytes(range(256)))
    store = build_object_store(settings)
    assert isinstance(store, LocalObjectStore)

    head = await store.head(BucketClass.VIDEO, "videos/abc.mp4")
    assert isinstance(head, MetadataFound)
    assert head.metadata.size == 256

    result = await store.get(BucketClass.VIDEO, "videos/abc.mp4", ByteRange(10, 19))
    assert isinstance(result, ObjectFound)
    assert result.content_length == 10
    data = b"".join([chunk async for chunk in result.body.iter_chunks()])
    await result.body.close()
    assert data == bytes(range(10, 20))

    whole = await store.get(BucketClass.VIDEO, "videos/abc.mp4")
    assert isinstance(whole, ObjectFound)
    assert whole.content_length == 256
    await whole.body.close()


@pytest.mark.asyncio
async def test_local_store_missing_and_escaping_keys(tmp_path):
    store = LocalObjectStore(make_settings(), tmp_path)

    assert isinstance(await store.head(BucketClass.DOCUMENT, "books/none.pdf"), ObjectMissing)
    assert isinstance(await store.get(BucketClass.DOCUMENT, "books/none.pdf"), ObjectMissing)
    assert isinstance(await store.head(BucketClass.DOCUMENT, "../videos/x.mp4"), StoreFailure)
