"""FastAPI application issuing capability tokens and streaming gated content."""

from __future__ import annotations

import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Optional, Type, TypeVar

import httpx
import structlog
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..common.errors import (
    BadRequest,
    Forbidden,
    GatewayError,
    Internal,
    NotFound,
    RangeNotSatisfiable,
    RateLimited,
    Unauthorized,
)
from ..common.http_security import get_client_ip, require_internal_token, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Histogram, LabeledCounter
from ..common.observability import (
    annotate_content_request,
    bind_request_context,
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
)
from ..common.ratelimit import RateLimitDecision, RateLimiter, RateLimitPolicy
from ..common.schemas import (
    BucketClass,
    ContentGrant,
    ContentHints,
    DocumentTokenRequest,
    DocumentTokenResponse,
    EntitlementDecision,
    InvalidationRequest,
    ObjectMetadata,
    ResourceLocation,
    Subject,
    VideoPlaybackResponse,
    VideoTokenRequest,
)
from ..common.security import TokenCodec, filename_from_key, is_safe_key
from ..common.settings import GatewaySettings
from ..common.stores import SharedStore, build_store
from .cache import EntitlementCache, MetadataCache
from .collaborators import (
    CollaboratorError,
    ContentCatalog,
    IdentityProvider,
    MembershipDirectory,
    UnsupportedLocation,
    build_collaborators,
)
from .ranges import UNSATISFIABLE, resolve_range
from .storage import MetadataFound, ObjectMissing, ObjectStore, StoreFailure, build_object_store
from .streaming import build_stream_response, content_type_for

LOGGER = structlog.get_logger("lexgate.content_gateway")
TRACER = trace.get_tracer("lexgate.content_gateway")

REQUESTS_BY_STATUS = GLOBAL_REGISTRY.register(
    LabeledCounter("lexgate_http_responses_total", "status", "HTTP responses by status code")
)
TOKENS_ISSUED = GLOBAL_REGISTRY.register(
    LabeledCounter("lexgate_tokens_issued_total", "bucket", "Capability tokens minted")
)
TOKENS_REJECTED = GLOBAL_REGISTRY.register(
    LabeledCounter("lexgate_tokens_rejected_total", "bucket", "Serve requests with a missing or invalid token")
)
RATE_LIMITED = GLOBAL_REGISTRY.register(
    LabeledCounter("lexgate_rate_limited_total", "scope", "Requests rejected by the rate limiter")
)
REQUEST_LATENCY = GLOBAL_REGISTRY.register(
    Histogram(
        "lexgate_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        description="Time to first response byte",
    )
)

DOCUMENT_SERVE_PATH = "/api/documents/serve"
VIDEO_SERVE_PATH = "/api/videos/serve"
VIDEO_COOKIE_PATH = "/api/videos"

RequestModelT = TypeVar("RequestModelT", bound=BaseModel)


class GatewayState:
    def __init__(
        self,
        settings: GatewaySettings,
        store: SharedStore,
        object_store: ObjectStore,
        identity: IdentityProvider,
        membership: MembershipDirectory,
        catalog: ContentCatalog,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.object_store = object_store
        self.identity = identity
        self.membership = membership
        self.catalog = catalog
        self._http_client = http_client
        self.codec = TokenCodec(settings.token_secrets, settings.token_clock_skew_seconds)
        self.rate_limiter = RateLimiter(store, settings.store_timeout_seconds)
        self.metadata_cache = MetadataCache(
            store, settings.metadata_cache_ttl_seconds, settings.store_timeout_seconds
        )
        self.entitlement_cache = EntitlementCache(
            store, settings.membership_cache_ttl_seconds, settings.store_timeout_seconds
        )
        self.issue_policy = RateLimitPolicy(settings.issue_rate_limit, settings.issue_rate_window_seconds)
        self.serve_policy = RateLimitPolicy(settings.serve_rate_limit, settings.serve_rate_window_seconds)
        self.logger = LOGGER

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
        await self.store.close()

    async def enforce_rate_limit(self, request: Request, scope: str, policy: RateLimitPolicy) -> RateLimitDecision:
        client_ip = get_client_ip(request, self.settings.trusted_proxies)
        decision = await self.rate_limiter.check_policy(f"{scope}:{client_ip}", policy)
        if not decision.allowed:
            RATE_LIMITED.inc(scope)
            raise RateLimited(decision.retry_after(), headers=decision.headers())
        return decision

    async def authenticate(self, request: Request) -> Subject:
        scheme, _, bearer = request.headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not bearer.strip():
            raise Unauthorized()
        try:
            subject = await self.identity.authenticate(bearer.strip())
        except CollaboratorError as exc:
            self.logger.error("identity_lookup_error", error=repr(exc))
            raise Internal("Failed to verify identity") from exc
        if subject is None:
            raise Unauthorized()
        return subject

    async def require_entitlement(self, subject: Subject) -> EntitlementDecision:
        async def fetch() -> EntitlementDecision:
            return await self.membership.lookup(subject.id)

        try:
            decision = await self.entitlement_cache.get_or_fetch(subject.id, fetch)
        except CollaboratorError as exc:
            self.logger.error("membership_lookup_error", error=repr(exc))
            raise Internal("Failed to verify membership") from exc
        decision = decision or EntitlementDecision()
        if not decision.is_entitled():
            self.logger.info("entitlement_denied", status=decision.status.value)
            raise Forbidden()
        return decision

    async def resolve_location(self, bucket_class: BucketClass, resource_id: str, subject: Subject) -> ResourceLocation:
        try:
            location = await self.catalog.resolve(bucket_class, resource_id, subject)
        except UnsupportedLocation as exc:
            raise BadRequest("Unsupported content URL") from exc
        except CollaboratorError as exc:
            self.logger.error("catalog_lookup_error", resource_id=resource_id, error=repr(exc))
            raise Internal("Failed to fetch content") from exc
        if location is None:
            raise NotFound()
        if location.bucket_class is not bucket_class or not is_safe_key(location.storage_key):
            self.logger.warning("catalog_key_rejected", resource_id=resource_id, bucket_class=bucket_class.value)
            raise BadRequest("Invalid key")
        return location

    def mint(self, subject: Subject, location: ResourceLocation, ttl_seconds: int) -> tuple[str, int]:
        now = int(time.time())
        grant = ContentGrant(
            subject=subject.id,
            resource_key=location.storage_key,
            bucket_class=location.bucket_class,
            resource_id=location.resource_id,
        )
        token = self.codec.mint(grant, ttl_seconds, now=now)
        TOKENS_ISSUED.inc(location.bucket_class.value)
        self.logger.info(
            "token_issued",
            resource_id=location.resource_id,
            bucket_class=location.bucket_class.value,
            ttl=ttl_seconds,
        )
        return token, now + ttl_seconds

    async def object_metadata(self, bucket_class: BucketClass, key: str) -> Optional[ObjectMetadata]:
        async def fetch() -> Optional[ObjectMetadata]:
            result = await self.object_store.head(bucket_class, key)
            if isinstance(result, MetadataFound):
                return result.metadata
            if isinstance(result, StoreFailure):
                self.logger.error(
                    "object_head_failed", bucket_class=bucket_class.value, key=key, error=repr(result.cause)
                )
                raise Internal("Failed to fetch object")
            return None

        return await self.metadata_cache.get_or_fetch(bucket_class, key, fetch)

    async def serve(self, request: Request, bucket_class: BucketClass, token: Optional[str]) -> StreamingResponse:
        if not token:
            TOKENS_REJECTED.inc(bucket_class.value)
            raise Unauthorized()
        claims = self.codec.verify(token)
        if claims is None or claims.bucket_class is not bucket_class:
            TOKENS_REJECTED.inc(bucket_class.value)
            raise Unauthorized("Invalid or expired token")

        key = claims.resource_key
        annotate_content_request(bucket_class.value, claims.subject, key)
        if not is_safe_key(key):
            raise BadRequest("Invalid key")

        metadata = await self.object_metadata(bucket_class, key)
        if metadata is None:
            raise NotFound()

        byte_range = resolve_range(request.headers.get("range"), metadata.size)
        if byte_range is UNSATISFIABLE:
            raise RangeNotSatisfiable(metadata.size)

        result = await self.object_store.get(bucket_class, key, byte_range)
        if isinstance(result, ObjectMissing):
            await self._drop_stale_metadata(bucket_class, key)
            raise NotFound()
        if isinstance(result, StoreFailure):
            self.logger.error("object_get_failed", bucket_class=bucket_class.value, key=key, error=repr(result.cause))
            raise Internal("Failed to fetch object")

        expected_length = metadata.size if byte_range is None else byte_range.length
        if result.content_length is not None and result.content_length != expected_length:
            self.logger.warning(
                "object_size_changed",
                bucket_class=bucket_class.value,
                key=key,
                expected=expected_length,
                actual=result.content_length,
            )
            await result.body.close()
            await self._drop_stale_metadata(bucket_class, key)
            raise Internal("Failed to fetch object")

        self.logger.info(
            "content_served",
            bucket_class=bucket_class.value,
            key=key,
            partial=byte_range is not None,
        )
        try:
            return build_stream_response(
                result.body,
                key=key,
                bucket_class=bucket_class,
                metadata=metadata,
                byte_range=byte_range,
                private_max_age=self.settings.private_cache_max_age_seconds,
            )
        except Exception:
            await result.body.close()
            raise

    async def _drop_stale_metadata(self, bucket_class: BucketClass, key: str) -> None:
        try:
            await self.metadata_cache.invalidate(bucket_class, key)
        except Exception:
            self.logger.warning("stale_metadata_not_invalidated", bucket_class=bucket_class.value, key=key)


def get_state(request: Request) -> GatewayState:
    return request.app.state.gateway  # type: ignore[attr-defined]


async def _parse_body(request: Request, model: Type[RequestModelT]) -> RequestModelT:
    raw = await request.body()
    try:
        payload = json.loads(raw) if raw else {}
        return model.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        raise BadRequest("Invalid request body") from exc


def _hints(key: str, url: str) -> ContentHints:
    filename, ext = filename_from_key(key)
    return ContentHints(filename=filename, ext=ext, content_type=content_type_for(key), url=url)


def _error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers or None)


def create_app(
    settings: Optional[GatewaySettings] = None,
    *,
    store: Optional[SharedStore] = None,
    object_store: Optional[ObjectStore] = None,
    identity: Optional[IdentityProvider] = None,
    membership: Optional[MembershipDirectory] = None,
    catalog: Optional[ContentCatalog] = None,
) -> FastAPI:
    settings = settings if settings is not None else GatewaySettings()
    configure_logging("lexgate.content_gateway", settings.log_level)
    configure_tracing(
        service_name="lexgate.content_gateway",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    http_client: Optional[httpx.AsyncClient] = None
    if identity is None or membership is None or catalog is None:
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.collaborator_timeout_seconds))
        default_identity, default_membership, default_catalog = build_collaborators(settings, http_client)
        identity = identity if identity is not None else default_identity
        membership = membership if membership is not None else default_membership
        catalog = catalog if catalog is not None else default_catalog

    state = GatewayState(
        settings,
        store if store is not None else build_store(settings.redis_url, settings.local_store_max_entries),
        object_store if object_store is not None else build_object_store(settings),
        identity,
        membership,
        catalog,
        http_client=http_client,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.logger.info("gateway_started", store=state.store.name, **state.object_store.status())
        try:
            yield
        finally:
            await state.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.gateway = state

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            state.logger.error("request_failed", path=request.url.path, status=exc.status_code, error=exc.message)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(BadRequest("Invalid request"))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        state.logger.exception("unhandled_error", path=request.url.path)
        return _error_response(Internal())

    @app.middleware("http")
    async def record_request(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        request_id = bind_request_context(request.headers.get("x-request-id"))
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY.observe(duration)
        REQUESTS_BY_STATUS.inc(str(response.status_code))
        response.headers["X-Request-ID"] = request_id
        response.headers.setdefault("X-Content-Type-Options", "nosniff")

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.post("/api/documents/view-token")
    async def issue_document_token(request: Request, state: GatewayState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("content_gateway.issue", attributes={"lexgate.bucket_class": "document"}):
            decision = await state.enforce_rate_limit(request, "issue", state.issue_policy)
            subject = await state.authenticate(request)
            annotate_content_request(BucketClass.DOCUMENT.value, subject.id)
            await state.require_entitlement(subject)
            payload = await _parse_body(request, DocumentTokenRequest)
            location = await state.resolve_location(BucketClass.DOCUMENT, payload.book_id, subject)

            token, expires_at = state.mint(subject, location, state.settings.document_token_ttl_seconds)
            body = DocumentTokenResponse(
                token=token,
                expires_at=expires_at,
                content_hints=_hints(location.storage_key, f"{DOCUMENT_SERVE_PATH}?token={token}"),
            )
            headers = decision.headers()
            headers["Cache-Control"] = "no-store"
            return JSONResponse(body.model_dump(by_alias=True), headers=headers)

    @app.get(DOCUMENT_SERVE_PATH)
    async def serve_document(
        request: Request,
        token: Optional[str] = Query(None),
        state: GatewayState = Depends(get_state),
    ) -> StreamingResponse:
        with TRACER.start_as_current_span("content_gateway.serve", attributes={"lexgate.bucket_class": "document"}):
            await state.enforce_rate_limit(request, "serve", state.serve_policy)
            return await state.serve(request, BucketClass.DOCUMENT, token)

    @app.post("/api/videos/play-token")
    async def issue_video_token(request: Request, state: GatewayState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("content_gateway.issue", attributes={"lexgate.bucket_class": "video"}):
            decision = await state.enforce_rate_limit(request, "issue", state.issue_policy)
            subject = await state.authenticate(request)
            annotate_content_request(BucketClass.VIDEO.value, subject.id)
            payload = await _parse_body(request, VideoTokenRequest)
            location = await state.resolve_location(BucketClass.VIDEO, payload.video_id, subject)
            if location.requires_entitlement:
                await state.require_entitlement(subject)

            ttl = state.settings.video_token_ttl_seconds
            token, expires_at = state.mint(subject, location, ttl)
            body = VideoPlaybackResponse(
                url=VIDEO_SERVE_PATH,
                expires_at=expires_at,
                content_hints=_hints(location.storage_key, VIDEO_SERVE_PATH),
            )
            headers = decision.headers()
            headers["Cache-Control"] = "no-store"
            response = JSONResponse(body.model_dump(by_alias=True), headers=headers)
            response.set_cookie(
                state.settings.video_cookie_name,
                token,
                max_age=ttl,
                path=VIDEO_COOKIE_PATH,
                secure=state.settings.secure_cookies,
                httponly=True,
                samesite="strict",
            )
            return response

    @app.get(VIDEO_SERVE_PATH)
    async def serve_video(request: Request, state: GatewayState = Depends(get_state)) -> StreamingResponse:
        with TRACER.start_as_current_span("content_gateway.serve", attributes={"lexgate.bucket_class": "video"}):
            await state.enforce_rate_limit(request, "serve", state.serve_policy)
            token = request.cookies.get(state.settings.video_cookie_name)
            return await state.serve(request, BucketClass.VIDEO, token)

    @app.post("/internal/cache/invalidate")
    async def invalidate_cache(request: Request, state: GatewayState = Depends(get_state)) -> dict:
        token = state.settings.internal_token.get_secret_value() if state.settings.internal_token else None
        require_internal_token(request, token)
        event = await _parse_body(request, InvalidationRequest)
        try:
            if event.kind == "metadata":
                if event.bucket_class is None or not is_safe_key(event.key):
                    raise BadRequest("bucketClass and a valid key are required")
                await state.metadata_cache.invalidate(event.bucket_class, event.key)
            else:
                if not event.subject:
                    raise BadRequest("subject is required")
                await state.entitlement_cache.invalidate(event.subject)
        except GatewayError:
            raise
        except Exception as exc:
            raise Internal("Invalidation failed") from exc
        return {"status": "invalidated", "kind": event.kind}

    @app.get("/status")
    async def status_probe(request: Request, state: GatewayState = Depends(get_state)) -> JSONResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        with TRACER.start_as_current_span("content_gateway.status"):
            return JSONResponse(
                {
                    "store": state.store.status(),
                    "object_store": state.object_store.status(),
                    "tokens_issued": {
                        bucket.value: TOKENS_ISSUED.value(bucket.value) for bucket in BucketClass
                    },
                }
            )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: GatewayState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: GatewayState = Depends(get_state)) -> dict:
        """Liveness/readiness probe; the shared store is optional, so its loss only degrades."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        checks: dict[str, object] = health["checks"]  # type: ignore[assignment]
        try:
            checks["store"] = await asyncio.wait_for(state.store.ping(), timeout=state.settings.store_timeout_seconds)
        except Exception as exc:
            checks["store"] = f"error: {type(exc).__name__}"
            health["status"] = "degraded"
        checks["object_store"] = state.object_store.status().get("backend", "unknown")
        return health

    return app
