"""Shared HTTP security helpers."""

from __future__ import annotations

import hmac
from ipaddress import ip_address, ip_network
from typing import Optional

from fastapi import HTTPException, Request, status


def _bearer_matches(request: Request, token: str) -> bool:
    auth_header = request.headers.get("authorization")
    return bool(auth_header) and hmac.compare_digest(auth_header, f"Bearer {token}")


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Enforce metrics endpoint authentication via token or localhost constraint."""
    if token:
        if not _bearer_matches(request, token):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client = request.client
    client_host = client.host if client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")

    try:
        if not ip_address(client_host).is_loopback:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Metrics access restricted to localhost",
            )
    except ValueError as exc:  # pragma: no cover - platform dependent
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied") from exc


def require_internal_token(request: Request, token: Optional[str]) -> None:
    """Guard internal event endpoints; disabled entirely when no token is configured."""
    if not token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Internal endpoints disabled")
    if not _bearer_matches(request, token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


def get_client_ip(request: Request, trusted_proxies: list[str]) -> str:
    """
    Get client IP, only trusting X-Forwarded-For from known proxies.

    Args:
        request: FastAPI request
        trusted_proxies: List of trusted proxy CIDR ranges

    Returns:
        Client IP address
    """
    source_ip = request.client.host if request.client else None
    if not trusted_proxies or not source_ip:
        return source_ip or "unknown"

    try:
        source = ip_address(source_ip)
        is_trusted = any(source in ip_network(cidr, strict=False) for cidr in trusted_proxies)
    except ValueError:
        is_trusted = False

    if is_trusted:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # First entry is the original client
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    return source_ip
