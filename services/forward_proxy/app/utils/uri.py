import re
from typing import Optional
from urllib.parse import quote

import httpx
from starlette.types import Scope

from ..config.forward import DownstreamTarget
from ..errors import UriConstructionError

_INVALID_TARGET_CHARS = re.compile(r"[\x00-\x20\x7f]")
_ABSOLUTE_FORM = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


def _origin_form(raw_path: str) -> str:
    """Strip scheme and authority from an absolute-form request target."""
    if _INVALID_TARGET_CHARS.search(raw_path):
        raise UriConstructionError(f"Invalid request target {raw_path!r}")
    try:
        return httpx.URL(raw_path).raw_path.decode("ascii")
    except httpx.InvalidURL as exc:
        raise UriConstructionError(f"Invalid request target {raw_path!r}: {exc}") from exc


def request_path_and_query(scope: Scope) -> str:
    """Return the inbound path and query exactly as they arrived on the wire.

    Clients talking to a proxy may send ``GET http://host/path``; only the
    path of such a target is kept, the authority is replaced downstream.
    """
    raw_path = scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1")
        if _ABSOLUTE_FORM.match(path):
            path = _origin_form(path)
    else:
        path = quote(scope.get("path") or "")

    query = scope.get("query_string") or b""
    if query:
        path = f"{path}?{query.decode('latin-1')}"
    return path or "/"


def rewrite_uri(path_and_query: Optional[str], downstream: DownstreamTarget) -> httpx.URL:
    """Build the outbound URI.

    Scheme and authority come from the downstream target, path and query
    from the inbound request (``/`` when it has none).
    """
    target = path_and_query or "/"
    if not target.startswith("/") or _INVALID_TARGET_CHARS.search(target):
        raise UriConstructionError(f"Invalid request target {target!r}")

    try:
        return httpx.URL(f"{downstream}{target}")
    except httpx.InvalidURL as exc:
        raise UriConstructionError(f"Cannot build URI {downstream}{target}: {exc}") from exc
