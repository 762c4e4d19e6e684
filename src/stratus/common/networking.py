"""HTTP client construction for outbound broker and identity-provider calls."""

from __future__ import annotations

import ssl
from pathlib import Path
from typing import Optional

import httpx


def build_timeout(total: float, connect: Optional[float] = None) -> httpx.Timeout:
    """Timeout applied to every outbound call; nothing waits unbounded."""

    total = max(0.1, total)
    connect = min(total, connect) if connect else total
    return httpx.Timeout(total, connect=connect)


def create_http_client(
    *,
    timeout: float,
    connect_timeout: Optional[float] = None,
    ca_bundle: Optional[Path] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Provide the shared httpx.AsyncClient used for broker and UAA traffic."""

    verify: bool | ssl.SSLContext = True
    if ca_bundle:
        verify = ssl.create_default_context(cafile=ca_bundle.as_posix())
    return httpx.AsyncClient(
        timeout=build_timeout(timeout, connect_timeout),
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        verify=verify,
        transport=transport,
        follow_redirects=False,
    )
