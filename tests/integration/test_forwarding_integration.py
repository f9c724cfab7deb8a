import socket
import threading
import time
from contextlib import contextmanager

import httpx
import pytest
import uvicorn
from fastapi import FastAPI, Request, Response

from services.forward_proxy.app.config.forward import (
    Direct,
    ForwardConfig,
    parse_downstream_target,
    parse_via_proxy,
)
from services.forward_proxy.app.main import create_app


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@contextmanager
def serve(app, lifespan: str = "off"):
    """
    Run an ASGI app under uvicorn in a background thread and yield its address.
    """
    port = free_port()
    server = uvicorn.Server(
        uvicorn.Config(app, host="127.0.0.1", port=port, http="h11", lifespan=lifespan, log_level="warning")
    )
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()

    deadline = time.time() + 10
    while not server.started:
        if time.time() > deadline or not thread.is_alive():
            raise RuntimeError("test server did not start")
        time.sleep(0.01)

    try:
        yield f"127.0.0.1:{port}"
    finally:
        server.should_exit = True
        thread.join(timeout=10)


downstream_app = FastAPI()


@downstream_app.api_route("/{path:path}", methods=["GET", "POST"])
async def echo(path: str, request: Request) -> Response:
    body = await request.body()
    return Response(
        content=body or b"hello",
        headers={
            "X-Test": "1",
            "X-Seen-Path": request.url.path,
            "X-Seen-Raw-Path": request.scope["raw_path"].decode("latin-1"),
            "X-Seen-Query": request.url.query,
            "X-Seen-Host": request.headers.get("host", ""),
        },
    )


class RecordingProxy:
    """
    Minimal upstream HTTP proxy: records absolute-form targets and answers itself.
    """

    def __init__(self):
        self.targets = []

    async def __call__(self, scope, receive, send):
        target = scope["raw_path"]
        if scope["query_string"]:
            target += b"?" + scope["query_string"]
        self.targets.append(target.decode("ascii"))

        await send({"type": "http.response.start", "status": 200, "headers": [(b"content-type", b"text/plain")]})
        await send({"type": "http.response.body", "body": b"via"})


def send_raw(address: str, request_line: str):
    """
    Send one request line over a plain socket and return status and headers.
    """
    host, port = address.rsplit(":", 1)
    with socket.create_connection((host, int(port)), timeout=10) as sock:
        sock.sendall(f"{request_line}\r\nHost: {address}\r\nConnection: close\r\n\r\n".encode("ascii"))
        data = b""
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                break
            data += chunk

    head, _, body = data.partition(b"\r\n\r\n")
    status_line, *header_lines = head.decode("latin-1").split("\r\n")
    headers = {}
    for line in header_lines:
        key, _, value = line.partition(":")
        headers[key.strip().lower()] = value.strip()
    return int(status_line.split()[1]), headers, body


@pytest.fixture(scope="module")
def downstream():
    with serve(downstream_app) as address:
        yield address


def test_direct_forwarding(downstream):
    config = ForwardConfig(downstream=parse_downstream_target(f"http://{downstream}"))

    with serve(create_app(config), lifespan="on") as proxy:
        with httpx.Client(base_url=f"http://{proxy}", trust_env=False) as client:
            response = client.get("/foo", params={"x": "1"})
            posted = client.post("/submit", content=b"payload")

    assert response.status_code == 200
    assert response.headers["x-test"] == "1"
    assert response.content == b"hello"
    assert response.headers["x-seen-path"] == "/foo"
    assert response.headers["x-seen-query"] == "x=1"
    assert response.headers["x-seen-host"] == downstream

    assert posted.status_code == 200
    assert posted.content == b"payload"


def test_forwarding_via_proxy():
    """
    Test that with a via-proxy every request goes to the proxy in absolute form.
    """
    via = RecordingProxy()

    with serve(via) as via_address:
        config = ForwardConfig(
            downstream=parse_downstream_target("http://example.internal:8080"),
            transport=parse_via_proxy(f"http://{via_address}"),
        )
        with serve(create_app(config), lifespan="on") as proxy:
            with httpx.Client(base_url=f"http://{proxy}", trust_env=False) as client:
                first = client.get("/foo?x=1")
                second = client.get("/bar")

    assert first.status_code == 200
    assert first.content == b"via"
    assert second.content == b"via"
    assert via.targets == [
        "http://example.internal:8080/foo?x=1",
        "http://example.internal:8080/bar",
    ]


def test_malformed_via_proxy_forwards_directly(downstream):
    transport = parse_via_proxy("http://proxy.internal:notaport")
    config = ForwardConfig(downstream=parse_downstream_target(f"http://{downstream}"), transport=transport)

    with serve(create_app(config), lifespan="on") as proxy:
        response = httpx.get(f"http://{proxy}/direct", trust_env=False)

    assert transport == Direct()
    assert response.status_code == 200
    assert response.headers["x-seen-path"] == "/direct"


def test_unreachable_downstream_returns_500():
    """
    Test that connection refused gives an empty 500 and the proxy keeps serving.
    """
    config = ForwardConfig(downstream=parse_downstream_target(f"http://127.0.0.1:{free_port()}"))

    with serve(create_app(config), lifespan="on") as proxy:
        with httpx.Client(base_url=f"http://{proxy}", trust_env=False) as client:
            responses = [client.get("/foo") for _ in range(3)]

    assert [response.status_code for response in responses] == [500, 500, 500]
    assert all(response.content == b"" for response in responses)


def test_absolute_form_request_line_is_forwarded(downstream):
    """
    Test that GET http://other-host/path reaches the downstream as /path.
    """
    config = ForwardConfig(downstream=parse_downstream_target(f"http://{downstream}"))

    with serve(create_app(config), lifespan="on") as proxy:
        status, headers, body = send_raw(proxy, "GET http://anything.example/foo?x=1 HTTP/1.1")

    assert status == 200
    assert body == b"hello"
    assert headers["x-seen-raw-path"] == "/foo"
    assert headers["x-seen-query"] == "x=1"
    assert headers["x-seen-host"] == downstream


def test_percent_encoded_request_line_is_forwarded_verbatim(downstream):
    config = ForwardConfig(downstream=parse_downstream_target(f"http://{downstream}"))

    with serve(create_app(config), lifespan="on") as proxy:
        status, headers, _ = send_raw(proxy, "GET /files/a%20b?name=%2Ftmp HTTP/1.1")
        absolute_status, absolute_headers, _ = send_raw(
            proxy, "GET http://anything.example/files/a%20b?name=%2Ftmp HTTP/1.1"
        )

    assert status == 200
    assert headers["x-seen-raw-path"] == "/files/a%20b"
    assert headers["x-seen-query"] == "name=%2Ftmp"
    assert absolute_status == 200
    assert absolute_headers["x-seen-raw-path"] == "/files/a%20b"
    assert absolute_headers["x-seen-query"] == "name=%2Ftmp"
