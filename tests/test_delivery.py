from __future__ import annotations

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Iterator, List

import pytest

from herald.delivery import HttpDeliveryChannel, parse_sse_line
from herald.errors import DeliveryFailure


class _InjectHandler(BaseHTTPRequestHandler):
    requests: List[Dict[str, Any]] = []

    def log_message(self, format: str, *args: Any) -> None:
        return

    def do_GET(self) -> None:
        self.send_response(200 if self.path == "/status" else 404)
        self.end_headers()

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length", "0"))
        body = json.loads(self.rfile.read(length) or b"{}")
        self.requests.append(
            {"path": self.path, "body": body, "api_key": self.headers.get("x-api-key")}
        )
        if "/sessions/broken/" in self.path:
            self.send_response(500)
            self.send_header("Content-Type", "text/plain")
            self.end_headers()
            self.wfile.write(b"session crashed")
            return
        if body.get("stream"):
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.end_headers()
            for chunk in (
                'data: {"type": "text", "content": "Hel"}\n\n',
                "data: not-json\n\n",
                'data: {"type": "text", "content": "lo"}\n\n',
                'data: {"type": "complete", "content": "done"}\n\n',
            ):
                self.wfile.write(chunk.encode("utf-8"))
            return
        payload = json.dumps({"ok": True}).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)


@pytest.fixture
def server() -> Iterator[ThreadingHTTPServer]:
    _InjectHandler.requests = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _InjectHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield httpd
    finally:
        httpd.shutdown()
        httpd.server_close()
        thread.join(timeout=5)


def _endpoint(httpd: ThreadingHTTPServer) -> str:
    host, port = httpd.server_address[:2]
    return f"http://{host}:{port}"


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_parse_sse_line() -> None:
    assert parse_sse_line('data: {"type": "text"}') == {"type": "text"}
    assert parse_sse_line("data: ") is None
    assert parse_sse_line("data: [1, 2]") is None
    assert parse_sse_line("event: ping") is None
    assert parse_sse_line("data: {broken") is None


@pytest.mark.asyncio
async def test_deliver_posts_inject_request(server: ThreadingHTTPServer) -> None:
    channel = HttpDeliveryChannel(_endpoint(server), api_key="secret")
    await channel.deliver("team/main", "Good morning", sender="cron", silent=True)
    assert _InjectHandler.requests == [
        {
            "path": "/sessions/team%2Fmain/inject",
            "body": {"message": "Good morning", "from": "cron", "silent": True},
            "api_key": "secret",
        }
    ]


@pytest.mark.asyncio
async def test_deliver_streams_events(server: ThreadingHTTPServer) -> None:
    events: List[Dict[str, Any]] = []
    channel = HttpDeliveryChannel(_endpoint(server))
    await channel.deliver("main", "hi", silent=False, on_stream=events.append)
    assert [event["content"] for event in events] == ["Hel", "lo", "done"]
    assert _InjectHandler.requests[0]["body"]["stream"] is True
    assert _InjectHandler.requests[0]["api_key"] is None


@pytest.mark.asyncio
async def test_http_error_raises_delivery_failure(server: ThreadingHTTPServer) -> None:
    channel = HttpDeliveryChannel(_endpoint(server))
    with pytest.raises(DeliveryFailure, match="HTTP 500: session crashed"):
        await channel.deliver("broken", "hi")


@pytest.mark.asyncio
async def test_unreachable_endpoint_raises_delivery_failure() -> None:
    channel = HttpDeliveryChannel(f"http://127.0.0.1:{_unused_port()}", timeout_ms=2000)
    with pytest.raises(DeliveryFailure, match="failed"):
        await channel.deliver("main", "hi")
    assert await channel.is_running() is False


@pytest.mark.asyncio
async def test_is_running_probes_status(server: ThreadingHTTPServer) -> None:
    assert await HttpDeliveryChannel(_endpoint(server)).is_running() is True
