"""Shared HTTP client construction.

One client is built per process and injected into every network-facing
component; it is never reached through module state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from goupdate import __version__

if TYPE_CHECKING:
    from goupdate.config import Settings

USER_AGENT = f"goupdate/{__version__}"


@dataclass(frozen=True)
class HTTPTimeouts:
    """Timeout and pool bounds for the shared client."""

    connect: float = 5.0  # TCP connect + TLS handshake
    read: float = 10.0  # response headers and each body chunk
    write: float = 10.0
    pool: float = 5.0  # waiting for a free pooled connection
    request: float = 30.0  # fallback for any phase not set above
    keepalive_expiry: float = 90.0
    max_connections: int = 100
    max_keepalive_connections: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> HTTPTimeouts:
        return cls(
            connect=settings.http_connect_timeout,
            read=settings.http_read_timeout,
            write=settings.http_write_timeout,
            pool=settings.http_pool_timeout,
            request=settings.http_request_timeout,
            keepalive_expiry=settings.http_keepalive_expiry,
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive_connections,
        )


DEFAULT_TIMEOUTS = HTTPTimeouts()


def create_http_client(
    timeouts: HTTPTimeouts = DEFAULT_TIMEOUTS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build an ``httpx.AsyncClient`` with bounded timeouts and pooling.

    Proxy settings are read from the environment and redirects are followed,
    since the release feed and download hosts both redirect.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeouts.request,
            connect=timeouts.connect,
            read=timeouts.read,
            write=timeouts.write,
            pool=timeouts.pool,
        ),
        limits=httpx.Limits(
            max_connections=timeouts.max_connections,
            max_keepalive_connections=timeouts.max_keepalive_connections,
            keepalive_expiry=timeouts.keepalive_expiry,
        ),
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
        trust_env=True,
        transport=transport,
    )
