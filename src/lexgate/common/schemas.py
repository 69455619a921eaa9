"""Shared data models for the content delivery gateway."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BucketClass(str, Enum):
    """Logical partition of the backing object store."""

    DOCUMENT = "document"
    VIDEO = "video"


class EntitlementStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    REJECTED = "rejected"
    EXPIRED = "expired"
    NONE = "none"


class ContentGrant(BaseModel):
    """What a capability token grants: one subject, one storage key."""

    model_config = ConfigDict(frozen=True)

    subject: str = Field(min_length=1)
    resource_key: str = Field(min_length=1)
    bucket_class: BucketClass
    resource_id: Optional[str] = None


class ContentClaims(ContentGrant):
    """Verified token contents, including the validity window (unix seconds)."""

    issued_at: int
    expires_at: int


class Subject(BaseModel):
    """Authenticated caller as reported by the identity provider."""

    id: str
    email: Optional[str] = None


class EntitlementDecision(BaseModel):
    status: EntitlementStatus = EntitlementStatus.NONE
    expires_at: Optional[datetime] = None
    cached_at: Optional[float] = None

    def is_entitled(self, now: Optional[datetime] = None) -> bool:
        if self.status is not EntitlementStatus.APPROVED:
            return False
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now < expires_at


class ObjectMetadata(BaseModel):
    size: int = Field(gt=0)
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    cached_at: Optional[float] = None


class ResourceLocation(BaseModel):
    """Business identifier resolved to backing-store coordinates."""

    resource_id: str
    bucket_class: BucketClass
    storage_key: str
    requires_entitlement: bool = True


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocumentTokenRequest(_CamelModel):
    book_id: str = Field(min_length=1)


class VideoTokenRequest(_CamelModel):
    video_id: str = Field(min_length=1)


class ContentHints(_CamelModel):
    filename: str
    ext: str
    content_type: str
    url: str


class DocumentTokenResponse(_CamelModel):
    token: str
    expires_at: int
    content_hints: ContentHints


class VideoPlaybackResponse(_CamelModel):
    kind: Literal["proxy"] = "proxy"
    url: str
    expires_at: int
    content_hints: ContentHints


class InvalidationRequest(_CamelModel):
    kind: Literal["metadata", "entitlement"]
    bucket_class: Optional[BucketClass] = None
    key: Optional[str] = None
    subject: Optional[str] = None
