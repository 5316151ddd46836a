"""
MCP server communication over HTTP.

Two wire modes share one transport:

- ``http`` (Streamable HTTP): every JSON-RPC message is POSTed to the server
  URL; the reply is either a JSON body or a short ``text/event-stream``.
- ``sse`` (legacy HTTP+SSE): a long-lived GET stream announces a message
  endpoint, requests are POSTed there, and replies come back on the stream.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx

from mcpprobe.verifier.schema import TransportKind
from mcpprobe.verifier.transport import MCPConnectionError, MCPProtocolError, MCPTransport

logger = logging.getLogger(__name__)

SESSION_HEADER = "mcp-session-id"
PROTOCOL_HEADER = "mcp-protocol-version"
ACCEPT_BOTH = "application/json, text/event-stream"
# Upper bound on the session DELETE sent by stop().
TEARDOWN_SECONDS = 2.0


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """Yield ``(event, data)`` pairs from the lines of an event stream."""
    event = ""
    data = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield event or "message", "\n".join(data)
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event or "message", "\n".join(data)


class StreamedTransport(MCPTransport):
    """
    Communicate with a remote MCP server over Streamable HTTP or SSE.

    Pass ``client`` to reuse (or mock) an ``httpx.AsyncClient``; a client
    passed in is not closed by ``stop()``.
    """

    teardown_seconds = TEARDOWN_SECONDS

    def __init__(self, server, client: Optional[httpx.AsyncClient] = None, **kwargs):
        super().__init__(server, **kwargs)
        self._client = client
        self._owns_client = client is None
        self._session_id: Optional[str] = None
        self._endpoint: Optional[str] = None
        self._sse_response: Optional[httpx.Response] = None
        self._events: Optional[AsyncIterator[Tuple[str, str]]] = None

    @property
    def mode(self) -> TransportKind:
        return self.server.kind

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._client is None:
            # The verifier enforces the overall deadline.
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(None), follow_redirects=True)
        if self.mode is TransportKind.SSE and self._events is None:
            await self._open_event_stream()

    async def _open_event_stream(self) -> None:
        request = self._client.build_request(
            "GET", self.server.url, headers=self._headers({"Accept": "text/event-stream"})
        )
        with self._translate_errors():
            self._sse_response = await self._client.send(request, stream=True)
        await self._check_status(self._sse_response)
        self._events = iter_sse(self._sse_response.aiter_lines())

        event, data = await self._next_event("endpoint announcement")
        while event != "endpoint":
            logger.debug("%s: skipping '%s' event before endpoint", self.server.name, event)
            event, data = await self._next_event("endpoint announcement")
        self._endpoint = urljoin(self.server.url, data.strip())
        logger.debug("%s: SSE message endpoint is %s", self.server.name, self._endpoint)

    async def _shutdown(self) -> None:
        if self._events is not None:
            await self._events.aclose()
        if self._sse_response is not None:
            await self._sse_response.aclose()
        if self._client is None:
            return
        if self._session_id and self.mode is TransportKind.HTTP:
            try:
                await asyncio.wait_for(
                    self._client.delete(self.server.url, headers=self._headers()), self.teardown_seconds
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as exc:
                logger.debug("%s: session DELETE failed: %s", self.server.name, exc or type(exc).__name__)
        if self._owns_client:
            await self._client.aclose()

    # ── HTTP plumbing ─────────────────────────────────────────────────────

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(self.server.headers)
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        if self.negotiated_version:
            headers[PROTOCOL_HEADER] = self.negotiated_version
        headers.update(extra or {})
        return headers

    @contextmanager
    def _translate_errors(self):
        try:
            yield
        except httpx.TransportError as exc:
            raise MCPConnectionError(f"Cannot reach {self.server.url}: {exc or type(exc).__name__}") from exc

    async def _check_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        body = (await response.aread()).decode(errors="replace")
        await response.aclose()
        raise MCPConnectionError(f"HTTP {response.status_code} from {response.url}: {body[:200]}")

    async def _next_event(self, waiting_for: str) -> Tuple[str, str]:
        try:
            with self._translate_errors():
                return await self._events.__anext__()
        except StopAsyncIteration:
            raise MCPConnectionError(f"Event stream closed while waiting for {waiting_for}")

    # ── Message exchange ──────────────────────────────────────────────────

    async def _exchange(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if self.mode is TransportKind.SSE:
            return await self._exchange_sse(request)
        return await self._exchange_http(request)

    async def _exchange_http(self, request: Dict[str, Any]) -> Dict[str, Any]:
        headers = self._headers({"Accept": ACCEPT_BOTH})
        with self._translate_errors():
            async with self._client.stream("POST", self.server.url, json=request, headers=headers) as response:
                await self._check_status(response)
                if response.headers.get(SESSION_HEADER):
                    self._session_id = response.headers[SESSION_HEADER]

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" in content_type:
                    events = iter_sse(response.aiter_lines())
                    try:
                        async for event, data in events:
                            if event != "message":
                                continue
                            message = self.decode(data)
                            if await self._is_response_to(message, request["id"]):
                                return message
                    finally:
                        await events.aclose()
                    raise MCPConnectionError(
                        f"Event stream ended before a response to {request['method']} arrived"
                    )

                body = (await response.aread()).decode(errors="replace")
                if not body.strip():
                    raise MCPProtocolError(f"Empty response body for {request['method']}")
                payload = self.decode(body)
                for message in payload if isinstance(payload, list) else [payload]:
                    if await self._is_response_to(message, request["id"]):
                        return message
                raise MCPProtocolError(f"No response to {request['method']} in reply body")

    async def _exchange_sse(self, request: Dict[str, Any]) -> Dict[str, Any]:
        await self._post(request)
        while True:
            event, data = await self._next_event(f"a response to {request['method']}")
            if event != "message":
                continue
            message = self.decode(data)
            if await self._is_response_to(message, request["id"]):
                return message

    async def _post(self, message: Dict[str, Any]) -> None:
        url = self._endpoint if self.mode is TransportKind.SSE else self.server.url
        headers = self._headers({"Accept": ACCEPT_BOTH})
        with self._translate_errors():
            response = await self._client.post(url, json=message, headers=headers)
        await self._check_status(response)

    async def _deliver(self, message: Dict[str, Any]) -> None:
        await self._post(message)
