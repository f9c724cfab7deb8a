import logging
import time
from typing import AsyncIterator, List, Optional, Tuple

import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config.forward import ForwardConfig
from ..utils.uri import request_path_and_query, rewrite_uri

logger = logging.getLogger(__name__)


async def forward(request: Request, config: ForwardConfig, client: httpx.AsyncClient) -> Response:
    """Forward one inbound request and return exactly one response.

    Any failure while rewriting or sending is turned into a 500 with an
    empty body here and nowhere else; the caller never sees the detail.
    """
    start_time = time.time()
    try:
        upstream = await _send_downstream(request, config, client)
    except Exception as e:
        logger.error(
            f"Error forwarding {request.method} {request.url.path} to {config.downstream}: {e!r}"
        )
        return Response(status_code=500)

    duration = time.time() - start_time
    logger.info(
        f"{request.method} {upstream.request.url} - Status: {upstream.status_code} - "
        f"Duration: {duration:.3f}s"
    )
    return UpstreamResponse(upstream)


async def _send_downstream(
    request: Request, config: ForwardConfig, client: httpx.AsyncClient
) -> httpx.Response:
    """Rewrite the target and send the request; raises on any failure."""
    url = rewrite_uri(request_path_and_query(request.scope), config.downstream)

    outbound = client.build_request(
        method=request.method,
        url=url,
        headers=_prepare_headers(request, config),
        content=_request_body(request),
    )
    return await client.send(outbound, stream=True)


def _prepare_headers(request: Request, config: ForwardConfig) -> List[Tuple[bytes, bytes]]:
    """Carry the inbound headers through verbatim.

    Host is dropped so httpx derives it from the downstream authority,
    unless the config asks to preserve it.
    """
    return [
        (key, value)
        for key, value in request.headers.raw
        if config.preserve_host or key.lower() != b"host"
    ]


def _request_body(request: Request) -> Optional[AsyncIterator[bytes]]:
    # A request without framing headers has no body; sending an empty
    # stream would make httpx add chunked framing.
    if "content-length" in request.headers or "transfer-encoding" in request.headers:
        return request.stream()
    return None


class UpstreamResponse(StreamingResponse):
    """Relays a streamed downstream response and always releases it.

    The downstream connection goes back to the pool once the relay ends,
    including when the caller disconnects before the body is read.
    """

    def __init__(self, upstream: httpx.Response):
        super().__init__(upstream.aiter_raw(), status_code=upstream.status_code)
        # ASGI wants lowercase names; duplicates such as set-cookie are kept
        self.raw_headers = [(key.lower(), value) for key, value in upstream.headers.raw]
        self.upstream = upstream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream.aclose()


class ForwardingMiddleware(BaseHTTPMiddleware):
    """Sends every inbound request, whatever its method or path, downstream."""

    def __init__(self, app: ASGIApp, config: ForwardConfig, client: httpx.AsyncClient):
        super().__init__(app)
        self.config = config
        self.client = client

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        return await forward(request, self.config, self.client)
