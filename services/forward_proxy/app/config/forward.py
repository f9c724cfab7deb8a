import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import httpx

from ..errors import ConfigurationError
from .settings import Settings

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class ListenAddress:
    host: str
    port: int

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


@dataclass(frozen=True)
class DownstreamTarget:
    """Scheme and authority every inbound request is redirected to."""

    scheme: str
    authority: str

    def __str__(self) -> str:
        return f"{self.scheme}://{self.authority}"


@dataclass(frozen=True)
class Direct:
    """Outbound requests connect straight to the downstream target."""

    def __str__(self) -> str:
        return "direct"


@dataclass(frozen=True)
class ViaProxy:
    """Outbound requests are relayed through an upstream HTTP proxy."""

    proxy: httpx.Proxy = field(compare=False)

    def __str__(self) -> str:
        # httpx.Proxy keeps credentials out of its url
        return f"via {self.proxy.url}"


Transport = Union[Direct, ViaProxy]


@dataclass(frozen=True)
class ForwardConfig:
    """Read-only configuration shared by every request handler.

    Built once before the listener binds and never mutated afterwards.
    The via-proxy handle, if any, is reused for every request.
    """

    downstream: DownstreamTarget
    transport: Transport = field(default_factory=Direct)
    preserve_host: bool = False
    timeout: Optional[float] = None


def parse_listen_address(value: str) -> ListenAddress:
    """Parse ``ip:port`` (IPv6 literals in brackets) into a ListenAddress."""
    raw = (value or "").strip()
    host, sep, port = raw.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigurationError(f"Invalid listen address {value!r}, expected ip:port")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigurationError(f"Invalid listen address {value!r}, IPv6 hosts must be bracketed")

    try:
        ipaddress.ip_address(host)
    except ValueError:
        raise ConfigurationError(f"Invalid listen address {value!r}, {host!r} is not an IP address") from None

    port_number = int(port)
    if port_number > 65535:
        raise ConfigurationError(f"Invalid listen address {value!r}, port out of range")
    return ListenAddress(host=host, port=port_number)


def _parse_http_url(value: str) -> httpx.URL:
    # A bare host[:port] means plain http
    raw = value if "://" in value else f"http://{value}"
    try:
        url = httpx.URL(raw)
    except httpx.InvalidURL as exc:
        raise ConfigurationError(str(exc)) from exc

    if url.scheme not in SUPPORTED_SCHEMES:
        raise ConfigurationError(f"unsupported scheme {url.scheme!r}")
    if not url.host:
        raise ConfigurationError("missing host")
    return url


def parse_downstream_target(value: str) -> DownstreamTarget:
    """Parse the downstream target, a scheme and authority with nothing else.

    Any failure is startup-fatal.
    """
    raw = (value or "").strip()
    if not raw:
        raise ConfigurationError("Downstream target must not be empty")

    try:
        url = _parse_http_url(raw)
    except ConfigurationError as exc:
        raise ConfigurationError(f"Invalid downstream target {value!r}: {exc}") from exc

    if url.userinfo:
        raise ConfigurationError(f"Invalid downstream target {value!r}: credentials are not supported")
    if url.path not in ("", "/") or url.query or url.fragment:
        raise ConfigurationError(
            f"Invalid downstream target {value!r}: only scheme and authority are allowed"
        )
    return DownstreamTarget(scheme=url.scheme, authority=url.netloc.decode("ascii"))


def parse_via_proxy(value: Optional[str], strict: bool = False) -> Transport:
    """Turn the optional via-proxy address into a Transport.

    An absent address selects Direct. An unparsable one falls back to Direct
    with a warning, or raises ConfigurationError when ``strict`` is set.
    """
    if value is None or not value.strip():
        return Direct()

    try:
        url = _parse_http_url(value.strip())
    except ConfigurationError as exc:
        if strict:
            raise ConfigurationError(f"Invalid via-proxy address: {exc}") from exc
        logger.warning(f"Via-proxy address is not a valid proxy URI ({exc}), forwarding directly")
        return Direct()

    return ViaProxy(proxy=httpx.Proxy(url))


def build_config(settings: Settings) -> ForwardConfig:
    config = ForwardConfig(
        downstream=parse_downstream_target(settings.PROXY_TO),
        transport=parse_via_proxy(settings.VIA_PROXY, strict=settings.VIA_PROXY_STRICT),
        preserve_host=settings.PRESERVE_HOST,
        timeout=settings.PROXY_TIMEOUT,
    )
    logger.info(f"Forwarding to {config.downstream} ({config.transport})")
    return config
