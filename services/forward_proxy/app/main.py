import argparse
import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
import uvicorn
from fastapi import FastAPI

from .config.forward import ForwardConfig, build_config, parse_listen_address
from .config.settings import Settings, get_settings
from .errors import ConfigurationError
from .logging_config import configure_logging
from .middleware.proxy import ForwardingMiddleware
from .utils.http_client import select_client

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[ForwardConfig] = None, client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """Build the proxy application.

    Without a config the settings are read from the environment; a bad
    downstream target raises ConfigurationError here, before anything binds.
    """
    if config is None:
        config = build_config(get_settings())
    http_client = client if client is not None else select_client(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if client is None:
            await http_client.aclose()

    # No docs routes: every path belongs to the downstream
    app = FastAPI(
        title="HTTP Forward Proxy",
        description="Forwards every request to a fixed downstream, optionally via an HTTP proxy",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.add_middleware(ForwardingMiddleware, config=config, client=http_client)
    return app


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="forward-proxy",
        description="HTTP forward proxy. Flags override the matching environment variables.",
    )
    parser.add_argument("-l", "--listen", help="listening address and port (LISTEN, default 127.0.0.1:9999)")
    parser.add_argument("-t", "--to", help="forward proxy to (PROXY_TO)")
    parser.add_argument("-v", "--via", help="via http proxy (VIA_PROXY)")
    parser.add_argument(
        "--via-strict",
        action="store_true",
        default=None,
        help="fail to start when the via proxy address is invalid (VIA_PROXY_STRICT)",
    )
    parser.add_argument(
        "--preserve-host",
        action="store_true",
        default=None,
        help="forward the caller's Host header unchanged (PRESERVE_HOST)",
    )
    parser.add_argument("--timeout", type=float, help="outbound timeout in seconds (PROXY_TIMEOUT)")
    parser.add_argument("--log-level", help="logging level (LOG_LEVEL, default INFO)")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    overrides = {
        "LISTEN": args.listen,
        "PROXY_TO": args.to,
        "VIA_PROXY": args.via,
        "VIA_PROXY_STRICT": args.via_strict,
        "PRESERVE_HOST": args.preserve_host,
        "PROXY_TIMEOUT": args.timeout,
        "LOG_LEVEL": args.log_level,
    }
    return Settings(**{key: value for key, value in overrides.items() if value is not None})


def run(argv: Optional[List[str]] = None) -> None:
    """Command line entry point; serves until the listener fails."""
    args = _parse_args(argv)
    try:
        settings = load_settings(args)
        configure_logging(settings.LOG_LEVEL)
        listen = parse_listen_address(settings.LISTEN)
        config = build_config(settings)
    except (ConfigurationError, ValueError) as e:
        sys.exit(f"error: {e}")

    logger.info(f"Listening on http://{listen}")
    uvicorn.run(
        create_app(config),
        host=listen.host,
        port=listen.port,
        log_config=None,
        log_level=settings.LOG_LEVEL.lower(),
    )
