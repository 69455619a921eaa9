"""Capability token codec and storage-key hygiene helpers."""

from __future__ import annotations

import hashlib
import re
import time
from collections.abc import Sequence
from typing import Optional

import jwt
import structlog

from .schemas import BucketClass, ContentClaims, ContentGrant

LOGGER = structlog.get_logger("lexgate.security")

TOKEN_ALGORITHM = "HS256"
DEFAULT_CLOCK_SKEW_SECONDS = 60

# Validity window is checked against _now() after the signature is verified.
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_iat": False,
    "verify_nbf": False,
    "verify_aud": False,
    "verify_iss": False,
}


class TokenTTL:
    """Token lifetime presets in seconds."""

    DOCUMENT_VIEW = 300
    VIDEO_PLAYBACK = 2 * 3600


def key_id_from_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def _now() -> int:
    return int(time.time())


class TokenCodec:
    """Mints and verifies compact HS256 capability tokens.

    Tokens are ``header.claims.signature`` with every segment base64url
    encoded, so they travel unchanged in query strings and cookie values.
    The first secret signs; any secret verifies, preferring the one whose
    key id matches the header ``kid``.
    """

    def __init__(self, secrets: str | Sequence[str], clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS) -> None:
        secret_list = [secrets] if isinstance(secrets, str) else [s for s in secrets if s]
        if not secret_list:
            raise ValueError("at least one token secret is required")
        self._secrets = secret_list
        self._clock_skew = max(0, clock_skew_seconds)

    def mint(self, grant: ContentGrant, ttl_seconds: int, *, now: Optional[int] = None) -> str:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        issued_at = _now() if now is None else now
        secret = self._secrets[0]
        claims: dict[str, object] = {
            "sub": grant.subject,
            "key": grant.resource_key,
            "bucket": grant.bucket_class.value,
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
        }
        if grant.resource_id is not None:
            claims["rid"] = grant.resource_id
        return jwt.encode(claims, secret, algorithm=TOKEN_ALGORITHM, headers={"kid": key_id_from_secret(secret)})

    def verify(self, token: str) -> Optional[ContentClaims]:
        """Return verified claims, or ``None`` for any malformed, forged or stale token."""

        if not isinstance(token, str) or token.count(".") != 2:
            return None

        payload = None
        for secret in self._candidate_secrets(token):
            try:
                payload = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM], options=_DECODE_OPTIONS)
            except jwt.InvalidSignatureError:
                continue
            except jwt.PyJWTError:
                return None
            break
        if payload is None:
            return None

        claims = self._parse_claims(payload)
        if claims is None:
            return None

        now = _now()
        if now >= claims.expires_at:
            return None
        if claims.issued_at > now + self._clock_skew:
            LOGGER.warning("token_issued_in_future", issued_at=claims.issued_at, now=now)
            return None
        return claims

    def _candidate_secrets(self, token: str) -> list[str]:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except jwt.PyJWTError:
            kid = None
        if not isinstance(kid, str):
            return self._secrets
        keyed = [secret for secret in self._secrets if key_id_from_secret(secret) == kid]
        return keyed + [secret for secret in self._secrets if secret not in keyed]

    @staticmethod
    def _parse_claims(payload: object) -> Optional[ContentClaims]:
        if not isinstance(payload, dict):
            return None
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in (issued_at, expires_at)):
            return None
        subject = payload.get("sub")
        key = payload.get("key")
        resource_id = payload.get("rid")
        if not isinstance(subject, str) or not isinstance(key, str):
            return None
        if resource_id is not None and not isinstance(resource_id, str):
            return None
        try:
            bucket_class = BucketClass(payload.get("bucket"))
            return ContentClaims(
                subject=subject,
                resource_key=key,
                bucket_class=bucket_class,
                resource_id=resource_id,
                issued_at=issued_at,
                expires_at=expires_at,
            )
        except ValueError:
            return None


_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f\x7f"\\]')


def is_safe_key(key: Optional[str]) -> bool:
    """Reject keys that could escape the bucket namespace before any backend call."""
    if not key or not key.strip():
        return False
    if key.startswith("/") or "\\" in key:
        return False
    if ".." in key:
        return False
    return not _CONTROL_CHARS.search(key)


def sanitize_filename(filename: str, fallback: str = "document") -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", filename).strip()
    return cleaned or fallback


def filename_from_key(key: str, fallback: str = "document") -> tuple[str, str]:
    """Return a header-safe filename and its lowercase extension for a storage key."""
    filename = sanitize_filename(key.rsplit("/", 1)[-1], fallback=fallback)
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return filename, ext
