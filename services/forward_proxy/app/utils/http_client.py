import logging

import httpx

from ..config.forward import Direct, ForwardConfig, ViaProxy

logger = logging.getLogger(__name__)


def select_client(config: ForwardConfig) -> httpx.AsyncClient:
    """Build the outbound client for the configured transport.

    The client is created once and shared by every request; httpx owns the
    connection pool. Proxy settings from the environment are ignored so the
    route depends on the configuration alone.
    """
    options = dict(
        timeout=httpx.Timeout(config.timeout),
        follow_redirects=False,
        trust_env=False,
    )

    transport = config.transport
    if isinstance(transport, ViaProxy):
        logger.debug(f"Outbound client relays through {transport.proxy.url}")
        return httpx.AsyncClient(proxy=transport.proxy, **options)
    if isinstance(transport, Direct):
        return httpx.AsyncClient(**options)
    raise TypeError(f"Unknown transport: {transport!r}")
