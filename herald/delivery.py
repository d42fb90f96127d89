"""
Delivery channels that inject a message into a target session.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional
from urllib import error as urllib_error
from urllib import request as urllib_request
from urllib.parse import quote

from herald.errors import DeliveryFailure

StreamCallback = Callable[[Dict[str, Any]], None]

DEFAULT_TIMEOUT_MS = 300_000
STATUS_TIMEOUT_MS = 2_000

logger = logging.getLogger(__name__)


class DeliveryChannel(ABC):
    @abstractmethod
    async def deliver(
        self,
        session: str,
        message: str,
        *,
        sender: str = "cron",
        silent: bool = True,
        on_stream: Optional[StreamCallback] = None,
    ) -> None:
        """Inject ``message`` into ``session``; raise DeliveryFailure on error."""


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data:
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


class HttpDeliveryChannel(DeliveryChannel):
    """POSTs to ``<endpoint>/sessions/<session>/inject`` of a running daemon.

    Blocking urllib calls run in a worker thread. ``on_stream`` callbacks are
    invoked from that thread, once per ``data:`` event of the SSE response.
    """

    def __init__(self, endpoint: str, api_key: str = "", timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout_ms = timeout_ms

    def _headers(self, accept: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if accept:
            headers["Accept"] = accept
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def deliver(
        self,
        session: str,
        message: str,
        *,
        sender: str = "cron",
        silent: bool = True,
        on_stream: Optional[StreamCallback] = None,
    ) -> None:
        await asyncio.to_thread(self._inject, session, message, sender, silent, on_stream)

    def _inject(
        self,
        session: str,
        message: str,
        sender: str,
        silent: bool,
        on_stream: Optional[StreamCallback],
    ) -> None:
        url = f"{self.endpoint}/sessions/{quote(session, safe='')}/inject"
        body: Dict[str, Any] = {"message": message, "from": sender, "silent": silent}
        accept = None
        if on_stream is not None:
            body["stream"] = True
            accept = "text/event-stream"
        req = urllib_request.Request(
            url=url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers=self._headers(accept),
        )
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.timeout_ms / 1000.0)) as response:
                if not 200 <= response.status < 300:
                    raise DeliveryFailure(f"HTTP {response.status} from {url}")
                if on_stream is None:
                    response.read()
                    return
                for raw_line in response:
                    event = parse_sse_line(raw_line.decode("utf-8", errors="replace").rstrip("\r\n"))
                    if event is not None:
                        on_stream(event)
        except urllib_error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            raise DeliveryFailure(f"HTTP {exc.code}: {detail}".rstrip(": ")) from exc
        except urllib_error.URLError as exc:
            raise DeliveryFailure(f"Delivery to {url} failed: {exc.reason}") from exc
        except OSError as exc:
            raise DeliveryFailure(f"Delivery to {url} failed: {exc}") from exc

    async def is_running(self) -> bool:
        return await asyncio.to_thread(self._probe_status)

    def _probe_status(self) -> bool:
        req = urllib_request.Request(url=f"{self.endpoint}/status", method="GET", headers=self._headers())
        try:
            with urllib_request.urlopen(req, timeout=STATUS_TIMEOUT_MS / 1000.0) as response:
                return 200 <= response.status < 300
        except (urllib_error.URLError, OSError) as exc:
            logger.debug("Status probe of %s failed: %s", self.endpoint, exc)
            return False
