"""Request authentication for the Stratus control plane."""

from __future__ import annotations

import hmac
from collections.abc import Sequence
from ipaddress import ip_address
from typing import Optional

import structlog
from fastapi import HTTPException, Request, status
from pydantic import SecretStr

from .security import decode_api_token

LOGGER = structlog.get_logger("stratus.common.http_security")


def bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_api_subject(request: Request, secrets: Sequence[str], allowed_subjects: Sequence[str] = ()) -> str:
    """Return the caller's subject, or reject the request.

    401 when no bearer token is sent, 403 when the token does not verify
    against any active secret or its subject is not on the allowlist. An empty
    allowlist admits every verified subject.
    """

    token = bearer_token(request)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    subject = decode_api_token(secrets, token)
    if subject is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")
    if allowed_subjects and subject not in allowed_subjects:
        LOGGER.warning("Token subject not allowed", subject=subject, path=request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Subject not allowed")
    return subject


def require_metrics_access(request: Request, token: Optional[SecretStr]) -> None:
    """Allow scrapes carrying the metrics token, or from loopback when none is configured."""

    if token is not None:
        presented = bearer_token(request) or ""
        if not hmac.compare_digest(presented.encode(), token.get_secret_value().encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    host = request.client.host if request.client else None
    try:
        loopback = bool(host) and ip_address(host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
