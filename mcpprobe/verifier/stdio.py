"""MCP server communication via stdio subprocess transport."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from typing import Any, Deque, Dict, Optional

from mcpprobe.verifier.transport import MCPConnectionError, MCPProtocolError, MCPTransport

logger = logging.getLogger(__name__)

# Tool lists arrive as a single line and can be large.
STREAM_LIMIT = 16 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 5.0
STDERR_DRAIN_SECONDS = 1.0


class StdioTransport(MCPTransport):
    """
    Communicate with an MCP server over stdin/stdout (newline-delimited JSON-RPC).

    The subprocess is spawned by ``start()`` and terminated by ``stop()``.
    Standard error is drained in the background and kept as diagnostics.
    """

    def __init__(self, server, max_stderr_lines: int = 50, **kwargs):
        super().__init__(server, **kwargs)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_lines: Deque[str] = deque(maxlen=max_stderr_lines)
        self._stderr_task: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the MCP server subprocess."""
        if self._process is not None:
            return

        merged_env = {**os.environ, **self.server.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.server.command,
                *self.server.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise MCPConnectionError(
                f"MCP server command not found: {self.server.command}. "
                "Make sure it is installed and on PATH."
            )
        except OSError as exc:
            raise MCPConnectionError(f"Failed to start MCP server command {self.server.command}: {exc}")

        logger.debug("%s: spawned %s (pid %s)", self.server.name, self.server.target, self._process.pid)
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process.stderr))

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            self._stderr_lines.append(line.decode(errors="replace").rstrip())

    async def _shutdown(self) -> None:
        """Terminate the MCP server subprocess."""
        process = self._process
        if process is None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.debug("%s: pid %s ignored SIGTERM, killing", self.server.name, process.pid)
                process.kill()
                await process.wait()
        logger.debug("%s: pid %s exited with %s", self.server.name, process.pid, process.returncode)

        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(self._stderr_task, STDERR_DRAIN_SECONDS)
            except asyncio.TimeoutError:
                logger.debug("%s: stderr still open after exit", self.server.name)

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def diagnostics(self) -> str:
        return "\n".join(self._stderr_lines)

    # ── Framing ───────────────────────────────────────────────────────────

    def _require_process(self) -> asyncio.subprocess.Process:
        if self._process is None:
            raise MCPConnectionError("MCP server process is not running")
        return self._process

    async def _exit_message(self, what: str) -> str:
        process = self._require_process()
        try:
            code = await asyncio.wait_for(process.wait(), STDERR_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            return f"MCP server {what}"
        return f"MCP server {what} (exit code {code})"

    async def _write(self, message: Dict[str, Any]) -> None:
        process = self._require_process()
        line = json.dumps(message) + "\n"
        try:
            process.stdin.write(line.encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            raise MCPConnectionError(await self._exit_message("exited before completing the handshake"))

    async def _read(self) -> Any:
        process = self._require_process()
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as exc:
                raise MCPProtocolError(f"Message from server exceeds {STREAM_LIMIT} bytes: {exc}")
            if not raw:
                raise MCPConnectionError(await self._exit_message("closed its output before completing the handshake"))
            text = raw.decode(errors="replace").strip()
            if text:
                return self.decode(text)

    async def _exchange(self, request: Dict[str, Any]) -> Dict[str, Any]:
        await self._write(request)
        while True:
            message = await self._read()
            if await self._is_response_to(message, request["id"]):
                return message

    async def _deliver(self, message: Dict[str, Any]) -> None:
        await self._write(message)
