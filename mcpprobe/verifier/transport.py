"""MCP client side of the handshake, shared by the stdio and streamed transports."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from mcpprobe import __version__
from mcpprobe.verifier.schema import (
    Handshake,
    PromptDescriptor,
    ResourceDescriptor,
    ServerDescriptor,
    ServerInfo,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2025-06-18"
DEFAULT_CLIENT_NAME = "mcpprobe"
MAX_LIST_PAGES = 100

METHOD_NOT_FOUND = -32601


class MCPTransportError(Exception):
    """Raised when MCP transport communication fails."""


class MCPConnectionError(MCPTransportError):
    """The server could not be reached, or went away before answering."""


class MCPProtocolError(MCPTransportError):
    """The server answered, but not the way the protocol says it should."""


class MCPTransport(ABC):
    """
    One client session with one MCP server.

    Subclasses move JSON-RPC messages over their wire; this base class owns
    request ids, response correlation, and the initialize/tools/list
    handshake. A transport is used for a single ``handshake()`` and then
    ``stop()``-ed; ``stop()`` is safe to call more than once.
    """

    def __init__(
        self,
        server: ServerDescriptor,
        client_name: str = DEFAULT_CLIENT_NAME,
        client_version: str = __version__,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
    ):
        self.server = server
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.negotiated_version: Optional[str] = None
        self._request_id = 0
        self._stopped = False

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @abstractmethod
    async def start(self) -> None:
        """Open the underlying process or connection."""

    @abstractmethod
    async def _shutdown(self) -> None:
        """Release the process or connection."""

    async def stop(self) -> None:
        """Tear the session down. Only the first call does any work."""
        if self._stopped:
            return
        self._stopped = True
        await self._shutdown()

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def diagnostics(self) -> str:
        """Out-of-band diagnostic text (e.g. captured stderr)."""
        return ""

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    @abstractmethod
    async def _exchange(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Send ``request`` and return the response message carrying its id."""

    @abstractmethod
    async def _deliver(self, message: Dict[str, Any]) -> None:
        """Send a message that expects no response."""

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a JSON-RPC request and return its result."""
        self._request_id += 1
        request: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
        }
        if params is not None:
            request["params"] = params

        response = await self._exchange(request)

        if "error" in response:
            err = response["error"] if isinstance(response["error"], dict) else {}
            raise MCPProtocolError(
                f"MCP error {err.get('code')} on {method}: {err.get('message', response['error'])}"
            )
        result = response.get("result")
        if not isinstance(result, dict):
            raise MCPProtocolError(f"Response to {method} has no result object")
        return result

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._deliver(message)

    @staticmethod
    def decode(raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MCPProtocolError(f"Malformed JSON from server ({exc.msg}): {raw[:200]!r}") from exc

    async def _is_response_to(self, message: Any, request_id: int) -> bool:
        """
        Classify one incoming message while waiting for ``request_id``.

        Notifications are dropped and server-initiated requests answered;
        both return False. A response with any other id is a protocol error.
        """
        if not isinstance(message, dict):
            raise MCPProtocolError(f"Expected a JSON-RPC object, got {type(message).__name__}")

        if "method" in message:
            if "id" in message:
                await self._answer_server_request(message)
            else:
                logger.debug("%s: ignoring notification %s", self.server.name, message["method"])
            return False

        if "id" not in message:
            raise MCPProtocolError("JSON-RPC response is missing its id")
        # true == 1 and 1.0 == 1 in Python, but not in JSON-RPC.
        if type(message["id"]) is not type(request_id) or message["id"] != request_id:
            raise MCPProtocolError(
                f"Response id {message['id']!r} does not match request id {request_id}"
            )
        if "result" not in message and "error" not in message:
            raise MCPProtocolError(f"Response {request_id} has neither result nor error")
        return True

    async def _answer_server_request(self, message: Dict[str, Any]) -> None:
        reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
        if message["method"] == "ping":
            reply["result"] = {}
        else:
            logger.debug("%s: declining server request %s", self.server.name, message["method"])
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": "Method not found"}
        await self._deliver(reply)

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Tuple[ServerInfo, Dict[str, Any]]:
        """Perform the MCP initialize handshake; return server info and capabilities."""
        result = await self.send("initialize", {
            "protocolVersion": self.protocol_version,
            "capabilities": {},
            "clientInfo": {"name": self.client_name, "version": self.client_version},
        })

        protocol_version = result.get("protocolVersion")
        capabilities = result.get("capabilities")
        if not isinstance(protocol_version, str) or not protocol_version:
            raise MCPProtocolError("initialize result is missing protocolVersion")
        if not isinstance(capabilities, dict):
            raise MCPProtocolError("initialize result is missing capabilities")
        self.negotiated_version = protocol_version

        info = result.get("serverInfo") if isinstance(result.get("serverInfo"), dict) else {}
        server_info = ServerInfo(
            name=str(info.get("name") or "unknown"),
            version=str(info.get("version") or "unknown"),
            protocol_version=protocol_version,
        )

        await self.notify("notifications/initialized")
        return server_info, capabilities

    async def _list_all(self, method: str, key: str) -> List[Any]:
        """Collect a paginated list result."""
        items: List[Any] = []
        cursor: Optional[str] = None
        seen = set()
        for _ in range(MAX_LIST_PAGES):
            result = await self.send(method, {"cursor": cursor} if cursor else None)
            page = result.get(key)
            if not isinstance(page, list):
                raise MCPProtocolError(f"{method} result is missing the '{key}' array")
            items.extend(page)

            cursor = result.get("nextCursor")
            if not cursor:
                return items
            if cursor in seen:
                raise MCPProtocolError(f"{method} returned a repeated cursor {cursor!r}")
            seen.add(cursor)
        raise MCPProtocolError(f"{method} did not finish within {MAX_LIST_PAGES} pages")

    async def list_tools(self) -> List[ToolDescriptor]:
        """Fetch and validate the full tool list."""
        tools: List[ToolDescriptor] = []
        names = set()
        for raw in await self._list_all("tools/list", "tools"):
            try:
                tool = ToolDescriptor.model_validate(raw)
            except ValidationError as exc:
                label = raw.get("name") if isinstance(raw, dict) else raw
                raise MCPProtocolError(f"Malformed tool {label!r} in tools/list: {exc}") from exc
            if not tool.name:
                raise MCPProtocolError("tools/list contains a tool without a name")
            if tool.name in names:
                raise MCPProtocolError(f"Duplicate tool name '{tool.name}' in tools/list")
            names.add(tool.name)
            tools.append(tool)
        return tools

    async def list_resources(self) -> List[ResourceDescriptor]:
        raw = await self._list_all("resources/list", "resources")
        try:
            return [ResourceDescriptor.model_validate(r) for r in raw]
        except ValidationError as exc:
            raise MCPProtocolError(f"Malformed resource in resources/list: {exc}") from exc

    async def list_prompts(self) -> List[PromptDescriptor]:
        raw = await self._list_all("prompts/list", "prompts")
        try:
            return [PromptDescriptor.model_validate(p) for p in raw]
        except ValidationError as exc:
            raise MCPProtocolError(f"Malformed prompt in prompts/list: {exc}") from exc

    async def handshake(self) -> Handshake:
        """
        Connect, initialize, and enumerate the server's tools.

        Resources and prompts are listed only when the server declares them;
        a server that then refuses to list them still passes.
        """
        await self.start()
        server_info, capabilities = await self.initialize()
        tools = await self.list_tools()

        resources: List[ResourceDescriptor] = []
        prompts: List[PromptDescriptor] = []
        if "resources" in capabilities:
            try:
                resources = await self.list_resources()
            except MCPProtocolError as exc:
                logger.debug("%s: resources/list failed: %s", self.server.name, exc)
        if "prompts" in capabilities:
            try:
                prompts = await self.list_prompts()
            except MCPProtocolError as exc:
                logger.debug("%s: prompts/list failed: %s", self.server.name, exc)

        return Handshake(server_info=server_info, tools=tools, resources=resources, prompts=prompts)
