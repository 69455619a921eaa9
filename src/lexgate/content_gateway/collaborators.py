"""Identity, membership and catalog collaborators.

The gateway only depends on the three protocols below. The default
implementations talk to a Supabase-style backend: GoTrue for identity and
PostgREST for the ``user_profiles``, ``books`` and ``videos`` tables.
"""

from __future__ import annotations

from typing import Optional, Protocol
from urllib.parse import parse_qs, unquote, urlsplit

import httpx
import jwt
import structlog
from pydantic import ValidationError

from ..common.schemas import (
    BucketClass,
    EntitlementDecision,
    EntitlementStatus,
    ResourceLocation,
    Subject,
)
from ..common.settings import GatewaySettings

LOGGER = structlog.get_logger("lexgate.collaborators")

SERVE_PATH_SUFFIXES = ("/api/storage/serve", "/api/documents/serve", "/api/videos/serve")
FREE_ACCESS_LEVEL = "free"


class CollaboratorError(Exception):
    """An upstream collaborator failed; maps to a generic 500."""


class UnsupportedLocation(Exception):
    """A catalog entry points at something that is not a storage key."""


class IdentityProvider(Protocol):
    async def authenticate(self, bearer: str) -> Optional[Subject]: ...


class MembershipDirectory(Protocol):
    async def lookup(self, subject: str) -> EntitlementDecision: ...


class ContentCatalog(Protocol):
    async def resolve(
        self, bucket_class: BucketClass, resource_id: str, subject: Subject
    ) -> Optional[ResourceLocation]: ...


def extract_storage_key(file_url: Optional[str]) -> Optional[str]:
    """Derive the storage key from a catalog ``file_url``.

    Accepts serve-endpoint URLs carrying ``key=``, absolute URLs whose path
    is the key (public bucket or custom domain), and bare keys.
    """
    value = (file_url or "").strip()
    if not value:
        return None

    parts = urlsplit(value)
    if parts.path.endswith(SERVE_PATH_SUFFIXES):
        keys = parse_qs(parts.query).get("key")
        return keys[0] if keys and keys[0] else None
    if parts.scheme and parts.netloc:
        key = unquote(parts.path).lstrip("/")
        return key or None
    return value.lstrip("/") or None


def _supabase_headers(api_key: Optional[str], bearer: Optional[str] = None) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if api_key:
        headers["apikey"] = api_key
    token = bearer or api_key
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class SupabaseIdentityProvider:
    """Resolves bearer tokens to subjects.

    With a JWT secret configured the token is verified locally (HS256,
    audience checked); otherwise the ``/auth/v1/user`` endpoint is asked.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        jwt_secret: Optional[str] = None,
        audience: str = "authenticated",
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/") if base_url else None
        self._api_key = api_key
        self._jwt_secret = jwt_secret
        self._audience = audience

    async def authenticate(self, bearer: str) -> Optional[Subject]:
        if not bearer:
            return None
        if self._jwt_secret:
            return self._decode_locally(bearer)
        if not self._base_url:
            LOGGER.error("identity_provider_not_configured")
            return None

        try:
            response = await self._http.get(
                f"{self._base_url}/auth/v1/user",
                headers=_supabase_headers(self._api_key, bearer),
            )
        except httpx.HTTPError as exc:
            raise CollaboratorError("identity provider unreachable") from exc
        if response.status_code in (401, 403):
            return None
        if response.is_error:
            LOGGER.error("identity_lookup_failed", status=response.status_code)
            raise CollaboratorError("identity provider error")

        payload = response.json()
        user_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(user_id, str) or not user_id:
            return None
        return Subject(id=user_id, email=payload.get("email"))

    def _decode_locally(self, bearer: str) -> Optional[Subject]:
        try:
            payload = jwt.decode(bearer, self._jwt_secret, algorithms=["HS256"], audience=self._audience)
        except jwt.PyJWTError as exc:
            LOGGER.info("identity_token_rejected", reason=type(exc).__name__)
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        email = payload.get("email")
        return Subject(id=subject, email=email if isinstance(email, str) else None)


class _PostgrestClient:
    def __init__(self, http: httpx.AsyncClient, base_url: Optional[str], api_key: Optional[str]) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/") if base_url else None
        self._api_key = api_key

    async def _select_one(self, table: str, columns: str, row_id: str) -> Optional[dict]:
        if not self._base_url:
            raise CollaboratorError(f"no backend configured for {table}")
        try:
            response = await self._http.get(
                f"{self._base_url}/rest/v1/{table}",
                params={"select": columns, "id": f"eq.{row_id}", "limit": "1"},
                headers=_supabase_headers(self._api_key),
            )
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"{table} lookup unreachable") from exc
        if response.is_error:
            LOGGER.error("postgrest_lookup_failed", table=table, status=response.status_code)
            raise CollaboratorError(f"{table} lookup failed")
        rows = response.json()
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        return None


class PostgrestMembershipDirectory(_PostgrestClient):
    async def lookup(self, subject: str) -> EntitlementDecision:
        row = await self._select_one("user_profiles", "membership_status,membership_ends_at", subject)
        if row is None:
            return EntitlementDecision(status=EntitlementStatus.NONE)
        try:
            status = EntitlementStatus(row.get("membership_status") or EntitlementStatus.NONE.value)
        except ValueError:
            LOGGER.warning("unknown_membership_status", status=row.get("membership_status"))
            status = EntitlementStatus.NONE
        try:
            return EntitlementDecision(status=status, expires_at=row.get("membership_ends_at"))
        except ValidationError:
            LOGGER.warning("malformed_membership_expiry")
            return EntitlementDecision(status=EntitlementStatus.NONE)


class PostgrestContentCatalog(_PostgrestClient):
    _TABLES = {
        BucketClass.DOCUMENT: ("books", "id,file_url"),
        BucketClass.VIDEO: ("videos", "id,file_url,access_level"),
    }

    async def resolve(
        self, bucket_class: BucketClass, resource_id: str, subject: Subject
    ) -> Optional[ResourceLocation]:
        table, columns = self._TABLES[bucket_class]
        row = await self._select_one(table, columns, resource_id)
        if row is None or not row.get("file_url"):
            return None

        key = extract_storage_key(str(row["file_url"]))
        if key is None:
            LOGGER.warning("unsupported_file_url", table=table, resource_id=resource_id)
            raise UnsupportedLocation(resource_id)
        requires_entitlement = True
        if bucket_class is BucketClass.VIDEO:
            requires_entitlement = row.get("access_level") != FREE_ACCESS_LEVEL
        return ResourceLocation(
            resource_id=resource_id,
            bucket_class=bucket_class,
            storage_key=key,
            requires_entitlement=requires_entitlement,
        )


def build_collaborators(
    settings: GatewaySettings, http: httpx.AsyncClient
) -> tuple[SupabaseIdentityProvider, PostgrestMembershipDirectory, PostgrestContentCatalog]:
    api_key = settings.identity_api_key.get_secret_value() if settings.identity_api_key else None
    jwt_secret = settings.identity_jwt_secret.get_secret_value() if settings.identity_jwt_secret else None
    identity = SupabaseIdentityProvider(
        http,
        settings.identity_base_url,
        api_key=api_key,
        jwt_secret=jwt_secret,
        audience=settings.identity_jwt_audience,
    )
    membership = PostgrestMembershipDirectory(http, settings.identity_base_url, api_key)
    catalog = PostgrestContentCatalog(http, settings.identity_base_url, api_key)
    return identity, membership, catalog
