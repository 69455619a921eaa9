from __future__ import annotations

import io
import time

import pytest

from lexgate.common import security
from lexgate.common.schemas import BucketClass, ContentGrant
from lexgate.common.security import TokenCodec
from lexgate.content_gateway.app import TOKENS_ISSUED, create_app
from lexgate.content_gateway.cache import MetadataCache
from lexgate.content_gateway.storage import ObjectBody, ObjectFound, StoreFailure

from tests.utils.gateway import (
    DOCUMENT_BUCKET,
    TOKEN_SECRET,
    VIDEO_BUCKET,
    app_client,
    make_settings,
    write_object,
)

MEMBER = {"Authorization": "Bearer member-token"}
GUEST = {"Authorization": "Bearer guest-token"}


def _mint(key: str, bucket_class: BucketClass, ttl: int = 300) -> str:
    return TokenCodec(TOKEN_SECRET).mint(ContentGrant(subject="user-member", resource_key=key, bucket_class=bucket_class), ttl)


def _cookie_token(set_cookie: str) -> str:
    name_value = set_cookie.split(";", 1)[0]
    return name_value.split("=", 1)[1]


def _video_cookie(token: str) -> dict[str, str]:
    return {"Cookie": f"video_token={token}"}


@pytest.fixture
def gateway(settings, shared_store, object_store, identity, membership, catalog):
    return create_app(
        settings,
        store=shared_store,
        object_store=object_store,
        identity=identity,
        membership=membership,
        catalog=catalog,
    )


@pytest.fixture
def media(tmp_path, catalog):
    video = bytes(i % 251 for i in range(1_000_000))
    document = b"%PDF-1.7\n" + b"0" * 991
    write_object(tmp_path, VIDEO_BUCKET, "videos/abc.mp4", video)
    write_object(tmp_path, DOCUMENT_BUCKET, "books/2024/Torts.pdf", document)
    catalog.add(BucketClass.VIDEO, "vid-1", "videos/abc.mp4")
    catalog.add(BucketClass.VIDEO, "free-1", "videos/abc.mp4", free=True)
    catalog.add(BucketClass.DOCUMENT, "book-1", "books/2024/Torts.pdf")
    return {"video": video, "document": document}


@pytest.mark.asyncio
async def test_issue_without_entitlement_is_forbidden(gateway, media):
    before = TOKENS_ISSUED.value("document")

    async with app_client(gateway) as client:
        response = await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=GUEST)

    assert response.status_code == 403
    assert response.json() == {"error": "Membership required"}
    assert "token" not in response.text
    assert TOKENS_ISSUED.value("document") == before


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer unknown"}, {"Authorization": "Basic abc"}])
async def test_issue_requires_authentication(gateway, media, headers):
    async with app_client(gateway) as client:
        response = await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=headers)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_video_token_then_ranged_playback(gateway, media, settings):
    async with app_client(gateway) as client:
        issued = await client.post("/api/videos/play-token", json={"videoId": "vid-1"}, headers=MEMBER)
        assert issued.status_code == 200

        body = issued.json()
        assert body["kind"] == "proxy"
        assert body["url"] == "/api/videos/serve"
        assert body["contentHints"]["contentType"] == "video/mp4"
        assert "token" not in body

        set_cookie = issued.headers["set-cookie"]
        attributes = [part.strip().lower() for part in set_cookie.split(";")]
        assert "httponly" in attributes
        assert "samesite=strict" in attributes
        assert "path=/api/videos" in attributes
        assert "secure" in attributes
        assert f"max-age={settings.video_token_ttl_seconds}" in attributes

        served = await client.get(
            "/api/videos/serve",
            headers={**_video_cookie(_cookie_token(set_cookie)), "Range": "bytes=0-99"},
        )

    assert served.status_code == 206
    assert served.headers["content-range"] == "bytes 0-99/1000000"
    assert served.headers["content-length"] == "100"
    assert served.headers["accept-ranges"] == "bytes"
    assert served.content == media["video"][:100]


@pytest.mark.asyncio
async def test_traversal_key_is_rejected_before_backend(gateway, object_store):
    token = _mint("videos/../../etc/passwd", BucketClass.VIDEO)

    async with app_client(gateway) as client:
        response = await client.get("/api/videos/serve", headers=_video_cookie(token))

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid key"}
    assert object_store.head_calls == []
    assert object_store.get_calls == []


@pytest.mark.asyncio
async def test_injected_empty_store_is_used(gateway, shared_store):
    assert len(shared_store) == 0
    assert gateway.state.gateway.store is shared_store
    assert gateway.state.gateway.metadata_cache._store is shared_store


@pytest.mark.asyncio
async def test_missing_object_is_404_and_not_cached(gateway, shared_store, object_store):
    token = _mint("videos/missing.mp4", BucketClass.VIDEO)

    async with app_client(gateway) as client:
        response = await client.get("/api/videos/serve", headers=_video_cookie(token))

    assert response.status_code == 404
    assert response.json() == {"error": "Not found"}
    assert gateway.state.gateway.store is shared_store
    assert object_store.head_calls == [(BucketClass.VIDEO, "videos/missing.mp4")]
    assert await shared_store.get(MetadataCache.cache_key(BucketClass.VIDEO, "videos/missing.mp4")) is None


@pytest.mark.asyncio
async def test_document_flow_serves_inline_pdf(gateway, media):
    async with app_client(gateway) as client:
        issued = await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=MEMBER)
        assert issued.status_code == 200
        body = issued.json()
        token = body["token"]

        served = await client.get("/api/documents/serve", params={"token": token})

    assert body["contentHints"] == {
        "filename": "Torts.pdf",
        "ext": "pdf",
        "contentType": "application/pdf",
        "url": f"/api/documents/serve?token={token}",
    }
    assert body["expiresAt"] > 0
    assert issued.headers["x-ratelimit-limit"] == "10"
    assert issued.headers["cache-control"] == "no-store"

    assert served.status_code == 200
    assert served.content == media["document"]
    assert served.headers["content-type"] == "application/pdf"
    assert served.headers["content-disposition"] == 'inline; filename="Torts.pdf"'
    assert served.headers["cache-control"] == "private, max-age=60"
    assert served.headers["x-content-type-options"] == "nosniff"


@pytest.mark.asyncio
async def test_non_ascii_document_name_is_encoded(gateway, tmp_path):
    payload = b"%PDF-1.7\n" + b"1" * 40
    key = "books/\u6cd5\u5f8b.pdf"
    write_object(tmp_path, DOCUMENT_BUCKET, key, payload)

    async with app_client(gateway) as client:
        response = await client.get("/api/documents/serve", params={"token": _mint(key, BucketClass.DOCUMENT)})

    assert response.status_code == 200
    assert response.content == payload
    disposition = response.headers["content-disposition"]
    assert disposition.startswith('inline; filename="__.pdf"')
    assert "filename*=UTF-8''%E6%B3%95%E5%BE%8B.pdf" in disposition


@pytest.mark.asyncio
async def test_tokens_are_bound_to_their_bucket_class(gateway, media):
    document_token = _mint("books/2024/Torts.pdf", BucketClass.DOCUMENT)
    video_token = _mint("videos/abc.mp4", BucketClass.VIDEO)

    async with app_client(gateway) as client:
        as_video = await client.get("/api/videos/serve", headers=_video_cookie(document_token))
        as_document = await client.get("/api/documents/serve", params={"token": video_token})

    assert as_video.status_code == 401
    assert as_document.status_code == 401


@pytest.mark.asyncio
async def test_video_serve_ignores_query_token(gateway, media):
    token = _mint("videos/abc.mp4", BucketClass.VIDEO)

    async with app_client(gateway) as client:
        response = await client.get("/api/videos/serve", params={"token": token})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_document_serve_without_token(gateway):
    async with app_client(gateway) as client:
        response = await client.get("/api/documents/serve")

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_expired_token_is_rejected(gateway, media, monkeypatch):
    token = _mint("books/2024/Torts.pdf", BucketClass.DOCUMENT, ttl=60)
    monkeypatch.setattr(security, "_now", lambda: int(time.time()) + 3600)

    async with app_client(gateway) as client:
        response = await client.get("/api/documents/serve", params={"token": token})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_free_video_skips_membership(gateway, media, membership):
    async with app_client(gateway) as client:
        response = await client.post("/api/videos/play-token", json={"videoId": "free-1"}, headers=GUEST)

    assert response.status_code == 200
    assert membership.calls == []


@pytest.mark.asyncio
async def test_gated_video_requires_membership(gateway, media):
    async with app_client(gateway) as client:
        response = await client.post("/api/videos/play-token", json={"videoId": "vid-1"}, headers=GUEST)

    assert response.status_code == 403
    assert "set-cookie" not in response.headers


@pytest.mark.asyncio
async def test_entitlement_decisions_are_cached(gateway, media, membership):
    async with app_client(gateway) as client:
        for _ in range(2):
            response = await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=MEMBER)
            assert response.status_code == 200

    assert membership.calls == ["user-member"]


@pytest.mark.asyncio
async def test_unknown_resource_and_bad_body(gateway, media):
    async with app_client(gateway) as client:
        unknown = await client.post("/api/documents/view-token", json={"bookId": "nope"}, headers=MEMBER)
        missing_field = await client.post("/api/documents/view-token", json={}, headers=MEMBER)
        not_json = await client.post(
            "/api/videos/play-token",
            content=b"{broken",
            headers={**MEMBER, "Content-Type": "application/json"},
        )

    assert unknown.status_code == 404
    assert missing_field.status_code == 400
    assert missing_field.json() == {"error": "Invalid request body"}
    assert not_json.status_code == 400


@pytest.mark.asyncio
async def test_issue_is_rate_limited(tmp_path, shared_store, object_store, identity, membership, catalog, media):
    app = create_app(
        make_settings(local_storage_path=tmp_path, issue_rate_limit=2),
        store=shared_store,
        object_store=object_store,
        identity=identity,
        membership=membership,
        catalog=catalog,
    )

    async with app_client(app) as client:
        statuses = []
        for _ in range(3):
            response = await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=MEMBER)
            statuses.append(response.status_code)

    assert statuses == [200, 200, 429]
    assert int(response.headers["retry-after"]) >= 1
    assert response.headers["x-ratelimit-remaining"] == "0"
    assert response.headers["x-ratelimit-limit"] == "2"
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_rate_limit_runs_before_authentication(
    tmp_path, shared_store, object_store, identity, membership, catalog
):
    app = create_app(
        make_settings(local_storage_path=tmp_path, issue_rate_limit=1),
        store=shared_store,
        object_store=object_store,
        identity=identity,
        membership=membership,
        catalog=catalog,
    )

    async with app_client(app) as client:
        first = await client.post("/api/documents/view-token", json={"bookId": "book-1"})
        second = await client.post("/api/documents/view-token", json={"bookId": "book-1"})

    assert first.status_code == 401
    assert second.status_code == 429
    assert identity.calls == []


@pytest.mark.asyncio
async def test_unsatisfiable_and_malformed_ranges(gateway, media):
    token = _mint("books/2024/Torts.pdf", BucketClass.DOCUMENT)

    async with app_client(gateway) as client:
        beyond = await client.get(
            "/api/documents/serve", params={"token": token}, headers={"Range": "bytes=5000-"}
        )
        malformed = await client.get(
            "/api/documents/serve", params={"token": token}, headers={"Range": "bytes=0-1,5-9"}
        )
        suffix = await client.get("/api/documents/serve", params={"token": token}, headers={"Range": "bytes=-10"})

    assert beyond.status_code == 416
    assert beyond.headers["content-range"] == "bytes */1000"
    assert malformed.status_code == 200
    assert malformed.content == media["document"]
    assert suffix.status_code == 206
    assert suffix.content == media["document"][-10:]
    assert suffix.headers["content-range"] == "bytes 990-999/1000"


@pytest.mark.asyncio
async def test_metadata_is_fetched_once_across_requests(gateway, media, object_store):
    token = _mint("videos/abc.mp4", BucketClass.VIDEO)

    async with app_client(gateway) as client:
        for _ in range(3):
            response = await client.get("/api/videos/serve", headers={**_video_cookie(token), "Range": "bytes=0-9"})
            assert response.status_code == 206

    assert len(object_store.head_calls) == 1
    assert len(object_store.get_calls) == 3


@pytest.mark.asyncio
async def test_object_deleted_after_caching_returns_404_and_invalidates(gateway, media, tmp_path, shared_store):
    token = _mint("books/2024/Torts.pdf", BucketClass.DOCUMENT)
    cache_key = MetadataCache.cache_key(BucketClass.DOCUMENT, "books/2024/Torts.pdf")

    async with app_client(gateway) as client:
        assert (await client.get("/api/documents/serve", params={"token": token})).status_code == 200
        assert await shared_store.get(cache_key) is not None

        tmp_path.joinpath(DOCUMENT_BUCKET, "books", "2024", "Torts.pdf").unlink()
        response = await client.get("/api/documents/serve", params={"token": token})

    assert response.status_code == 404
    assert await shared_store.get(cache_key) is None


class FailingObjectStore:
    async def head(self, bucket_class, key):
        return StoreFailure("head failed", RuntimeError("AccessDenied: arn:aws:s3:::secret-bucket"))

    async def get(self, bucket_class, key, byte_range=None):
        return StoreFailure("get failed", RuntimeError("boom"))

    def status(self):
        return {"backend": "failing"}


@pytest.mark.asyncio
async def test_backend_failures_are_generic_500(settings, shared_store, identity, membership, catalog):
    app = create_app(
        settings,
        store=shared_store,
        object_store=FailingObjectStore(),
        identity=identity,
        membership=membership,
        catalog=catalog,
    )
    token = _mint("videos/abc.mp4", BucketClass.VIDEO)

    async with app_client(app) as client:
        response = await client.get("/api/videos/serve", headers=_video_cookie(token))

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to fetch object"}
    assert "secret-bucket" not in response.text


class ResizedObjectStore:
    def __init__(self, inner) -> None:
        self.inner = inner
        self.bodies: list[io.BytesIO] = []

    async def head(self, bucket_class, key):
        return await self.inner.head(bucket_class, key)

    async def get(self, bucket_class, key, byte_range=None):
        raw = io.BytesIO(b"short")
        self.bodies.append(raw)
        return ObjectFound(ObjectBody(raw), content_length=5)

    def status(self):
        return {"backend": "resized"}


@pytest.mark.asyncio
async def test_object_resized_after_caching_is_500_and_invalidates(
    settings, shared_store, object_store, identity, membership, catalog, media
):
    resized = ResizedObjectStore(object_store)
    app = create_app(
        settings,
        store=shared_store,
        object_store=resized,
        identity=identity,
        membership=membership,
        catalog=catalog,
    )
    token = _mint("books/2024/Torts.pdf", BucketClass.DOCUMENT)
    cache_key = MetadataCache.cache_key(BucketClass.DOCUMENT, "books/2024/Torts.pdf")

    async with app_client(app) as client:
        response = await client.get("/api/documents/serve", params={"token": token})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to fetch object"}
    assert resized.bodies[0].closed
    assert await shared_store.get(cache_key) is None


@pytest.mark.asyncio
async def test_internal_invalidation(tmp_path, shared_store, object_store, identity, membership, catalog, media):
    app = create_app(
        make_settings(local_storage_path=tmp_path, internal_token="internal-secret"),
        store=shared_store,
        object_store=object_store,
        identity=identity,
        membership=membership,
        catalog=catalog,
    )
    token = _mint("videos/abc.mp4", BucketClass.VIDEO)
    auth = {"Authorization": "Bearer internal-secret"}

    async with app_client(app) as client:
        await client.get("/api/videos/serve", headers={**_video_cookie(token), "Range": "bytes=0-0"})
        await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=MEMBER)

        denied = await client.post(
            "/internal/cache/invalidate",
            json={"kind": "metadata", "bucketClass": "video", "key": "videos/abc.mp4"},
            headers={"Authorization": "Bearer wrong"},
        )
        metadata = await client.post(
            "/internal/cache/invalidate",
            json={"kind": "metadata", "bucketClass": "video", "key": "videos/abc.mp4"},
            headers=auth,
        )
        entitlement = await client.post(
            "/internal/cache/invalidate", json={"kind": "entitlement", "subject": "user-member"}, headers=auth
        )
        incomplete = await client.post("/internal/cache/invalidate", json={"kind": "metadata"}, headers=auth)
        await client.get("/api/videos/serve", headers={**_video_cookie(token), "Range": "bytes=0-0"})
        await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=MEMBER)

    assert denied.status_code == 401
    assert metadata.status_code == 200
    assert entitlement.status_code == 200
    assert incomplete.status_code == 400
    assert len(object_store.head_calls) == 2
    assert membership.calls == ["user-member", "user-member"]


@pytest.mark.asyncio
async def test_internal_invalidation_disabled_without_token(gateway):
    async with app_client(gateway) as client:
        response = await client.post(
            "/internal/cache/invalidate",
            json={"kind": "entitlement", "subject": "user-member"},
            headers={"Authorization": "Bearer anything"},
        )

    assert response.status_code == 403
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_operational_endpoints(gateway, media):
    async with app_client(gateway) as client:
        await client.post("/api/documents/view-token", json={"bookId": "book-1"}, headers=MEMBER)
        health = await client.get("/healthz", headers={"X-Request-ID": "req-123"})
        status_response = await client.get("/status")
        metrics = await client.get("/metrics")

    assert health.status_code == 200
    assert health.json()["checks"] == {"store": True, "object_store": "local"}
    assert health.headers["x-request-id"] == "req-123"
    assert status_response.json()["store"]["store"] == "local"
    assert metrics.status_code == 200
    assert 'lexgate_tokens_issued_total{bucket="document"}' in metrics.text
    assert "lexgate_cache_misses_total" in metrics.text
