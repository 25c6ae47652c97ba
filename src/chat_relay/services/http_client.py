"""
Shared HTTP client with connection pooling for the upstream provider.

Provides a long-lived httpx AsyncClient reused across relay invocations so
TLS sessions and keep-alive connections to the provider are shared.

Read timeout is disabled. The wait for the first bytes is bounded by
``upstream_timeout`` in the invoker, and no per-read timeout applies once
fragments are flowing.

Configuration (see ``chat_relay.config``):
    HTTP_MAX_CONNECTIONS: Maximum total connections in pool (default 100)
    HTTP_MAX_KEEPALIVE: Maximum keep-alive connections (default 20)
    HTTP_CONNECT_TIMEOUT: Connection timeout in seconds (default 5.0)
    HTTP_WRITE_TIMEOUT: Write timeout in seconds (default 30.0)
    HTTP_POOL_TIMEOUT: Pool timeout in seconds (default 10.0)

Last Grunted: 10/17/2026 09:00:00 AM UTC
"""
from typing import Optional

import httpx
import structlog

from chat_relay.config import RelaySettings

logger = structlog.get_logger(__name__)


# ============================================================================
# Client Configuration
# ============================================================================

def _create_limits(settings: RelaySettings) -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.http_max_connections,
        max_keepalive_connections=settings.http_max_keepalive,
        keepalive_expiry=5.0,  # Close idle connections after 5 seconds
    )


def _create_timeout(settings: RelaySettings) -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.http_connect_timeout,
        read=None,
        write=settings.http_write_timeout,
        pool=settings.http_pool_timeout,
    )


# ============================================================================
# Client Singleton
# ============================================================================

# Global client instance - initialized lazily
_client: Optional[httpx.AsyncClient] = None


async def get_client(settings: RelaySettings) -> httpx.AsyncClient:
    """
    Get the shared HTTP client instance.

    Creates the client on first call (lazy initialization).

    Args:
        settings: Relay settings used for pool limits and timeouts

    Returns:
        httpx.AsyncClient: Shared client instance

    Note:
        Call close_client() during application shutdown to properly
        release all connections.
    """
    global _client

    if _client is None:
        logger.info(
            "http_client.init",
            max_connections=settings.http_max_connections,
            max_keepalive=settings.http_max_keepalive,
        )
        _client = httpx.AsyncClient(
            limits=_create_limits(settings),
            timeout=_create_timeout(settings),
            http2=True,
        )

    return _client


async def close_client() -> None:
    """Close the shared HTTP client and release all connections."""
    global _client

    if _client is not None:
        logger.info("http_client.closing")
        await _client.aclose()
        _client = None
        logger.info("http_client.closed")
