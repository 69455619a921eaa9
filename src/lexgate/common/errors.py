"""Error taxonomy for the content gateway.

Every error renders as ``{"error": "<message>"}``. Messages are generic on
purpose: storage keys and backend error codes stay in the logs.
"""

from __future__ import annotations

from typing import Optional

from fastapi import status


class GatewayError(Exception):
    """Base exception carrying an HTTP status and a client-safe message."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, headers: Optional[dict[str, str]] = None) -> None:
        self.message = message or self.default_message
        self.headers = headers or {}
        super().__init__(self.message)

    def to_body(self) -> dict[str, str]:
        return {"error": self.message}


class Unauthorized(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class Forbidden(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Membership required"


class BadRequest(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"


class NotFound(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class RangeNotSatisfiable(GatewayError):
    status_code = status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
    default_message = "Requested range not satisfiable"

    def __init__(self, total_size: int) -> None:
        super().__init__(headers={"Content-Range": f"bytes */{total_size}", "Accept-Ranges": "bytes"})


class RateLimited(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, headers: Optional[dict[str, str]] = None) -> None:
        merged = dict(headers or {})
        merged["Retry-After"] = str(max(1, retry_after))
        super().__init__(headers=merged)


class Internal(GatewayError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal error"
