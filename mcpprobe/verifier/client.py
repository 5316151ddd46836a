"""
Verifier - connects to MCP servers and reports what they expose.

Each attempt owns one transport: spawn or connect, handshake, list tools,
tear down, then price the tool list with the token estimator. Expected
failures (refused connections, broken peers, timeouts) come back as
``VerificationResult`` values; only programmer errors and estimator
failures raise.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, List, Optional, Sequence

import httpx

from mcpprobe import __version__
from mcpprobe.verifier.schema import (
    Capabilities,
    ServerDescriptor,
    TransportKind,
    VerificationResult,
    VerificationStatus,
)
from mcpprobe.verifier.stdio import StdioTransport
from mcpprobe.verifier.streamed import StreamedTransport
from mcpprobe.verifier.tokens import (
    DEFAULT_FRAMING_ENVELOPE,
    CharTokenEstimator,
    TokenEstimator,
    ToolPricer,
)
from mcpprobe.verifier.transport import (
    DEFAULT_CLIENT_NAME,
    DEFAULT_PROTOCOL_VERSION,
    MCPTransport,
    MCPTransportError,
)

if TYPE_CHECKING:
    from mcpprobe.validation.config import VerifierSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class Verifier:
    """
    Verify one or many MCP servers.

    Example:
        >>> verifier = Verifier(default_timeout_ms=10000)
        >>> result = asyncio.run(verifier.verify_server(ServerDescriptor(
        ...     name="everything",
        ...     kind="stdio",
        ...     command="npx",
        ...     args=["-y", "@modelcontextprotocol/server-everything"],
        ... )))
        >>> result.status
        <VerificationStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        estimator: Optional[TokenEstimator] = None,
        client_name: str = DEFAULT_CLIENT_NAME,
        client_version: str = __version__,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
        framing_envelope: str = DEFAULT_FRAMING_ENVELOPE,
        include_framing: bool = True,
        max_stderr_lines: int = 50,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            default_timeout_ms: Handshake budget used when a call passes none.
            estimator: Token estimator; defaults to ``CharTokenEstimator()``.
            client_name: Name sent in ``clientInfo`` during initialize.
            client_version: Version sent in ``clientInfo``.
            protocol_version: Protocol revision offered during initialize.
            framing_envelope: Text priced once per server as list overhead.
            include_framing: Whether to price the envelope at all.
            max_stderr_lines: How much stderr to keep from stdio servers.
            http_client: Shared ``httpx.AsyncClient`` for streamed servers.
        """
        if default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")
        self.default_timeout_ms = default_timeout_ms
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.max_stderr_lines = max_stderr_lines
        self.http_client = http_client
        self.pricer = ToolPricer(
            estimator or CharTokenEstimator(),
            framing_envelope=framing_envelope,
            include_framing=include_framing,
        )

    @classmethod
    def from_settings(
        cls,
        settings: "VerifierSettings",
        estimator: Optional[TokenEstimator] = None,
        **overrides,
    ) -> "Verifier":
        """Build a verifier from the ``verifier`` section of the config."""
        options = dict(
            default_timeout_ms=settings.timeout_ms,
            estimator=estimator or CharTokenEstimator(settings.chars_per_token),
            client_name=settings.client_name,
            client_version=settings.client_version,
            protocol_version=settings.protocol_version,
            framing_envelope=settings.framing_envelope,
            include_framing=settings.include_framing,
            max_stderr_lines=settings.max_stderr_lines,
        )
        options.update(overrides)
        return cls(**options)

    # ── Transports ────────────────────────────────────────────────────────

    def open_transport(self, server: ServerDescriptor) -> MCPTransport:
        """Create (but do not start) the transport for ``server``."""
        common = dict(
            client_name=self.client_name,
            client_version=self.client_version,
            protocol_version=self.protocol_version,
        )
        if server.kind is TransportKind.STDIO:
            return StdioTransport(server, max_stderr_lines=self.max_stderr_lines, **common)
        if server.kind.is_streamed:
            return StreamedTransport(server, client=self.http_client, **common)
        raise ValueError(f"Unsupported transport kind: {server.kind}")

    # ── Verification ──────────────────────────────────────────────────────

    async def verify_server(
        self,
        server: ServerDescriptor,
        timeout_ms: Optional[int] = None,
    ) -> VerificationResult:
        """
        Verify a single MCP server.

        The timeout covers process spawn / connection plus the whole
        handshake. The transport is always stopped before this returns.

        Raises:
            ValueError: ``timeout_ms`` is not positive.
            EstimatorError: The token estimator failed.
        """
        timeout_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

        transport = self.open_transport(server)
        started = time.perf_counter()
        try:
            try:
                handshake = await asyncio.wait_for(transport.handshake(), timeout_ms / 1000)
            finally:
                elapsed = _elapsed_ms(started)
                await transport.stop()
        except asyncio.TimeoutError:
            logger.debug("%s: handshake timed out after %sms", server.name, timeout_ms)
            if transport.diagnostics:
                logger.debug("%s: stderr before timeout:\n%s", server.name, transport.diagnostics)
            return VerificationResult(
                server=server,
                status=VerificationStatus.TIMEOUT,
                connection_time_ms=elapsed,
                error=f"handshake exceeded {timeout_ms}ms",
            )
        except MCPTransportError as exc:
            logger.debug("%s: verification failed: %s", server.name, exc)
            return self._failure(server, elapsed, str(exc) or type(exc).__name__, transport)
        except Exception as exc:
            logger.debug("%s: unexpected error during handshake", server.name, exc_info=True)
            return self._failure(server, elapsed, f"Unexpected error: {exc!r}", transport)

        counts, framing, total = await self.pricer.price(handshake.tools)
        capabilities = Capabilities(
            tools=handshake.tools,
            tool_token_counts=counts,
            framing_tokens=framing,
            total_tool_tokens=total,
            server_info=handshake.server_info,
            resources=handshake.resources,
            prompts=handshake.prompts,
        )
        logger.debug(
            "%s: %d tools, %d tokens, %dms",
            server.name, len(handshake.tools), total, elapsed,
        )
        return VerificationResult(
            server=server,
            status=VerificationStatus.SUCCESS,
            connection_time_ms=elapsed,
            capabilities=capabilities,
        )

    @staticmethod
    def _failure(
        server: ServerDescriptor,
        elapsed: int,
        message: str,
        transport: MCPTransport,
    ) -> VerificationResult:
        if transport.diagnostics:
            message = f"{message}\nServer stderr:\n{transport.diagnostics}"
        return VerificationResult(
            server=server,
            status=VerificationStatus.FAILURE,
            connection_time_ms=elapsed,
            error=message,
        )

    async def verify_servers(
        self,
        servers: Sequence[ServerDescriptor],
        timeout_ms: Optional[int] = None,
    ) -> List[VerificationResult]:
        """
        Verify several servers concurrently.

        Results are in input order. An attempt that raises (e.g. the
        estimator failed) becomes a failure result instead of aborting
        the batch.
        """
        outcomes = await asyncio.gather(
            *(self.verify_server(server, timeout_ms) for server in servers),
            return_exceptions=True,
        )

        results: List[VerificationResult] = []
        for server, outcome in zip(servers, outcomes):
            if isinstance(outcome, VerificationResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                logger.warning("%s: verification raised %s", server.name, outcome)
                results.append(VerificationResult(
                    server=server,
                    status=VerificationStatus.FAILURE,
                    error=f"{type(outcome).__name__}: {outcome}",
                ))
            else:
                raise outcome
        return results


async def verify_server(
    server: ServerDescriptor,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    estimator: Optional[TokenEstimator] = None,
) -> VerificationResult:
    """Verify one server with default settings."""
    return await Verifier(estimator=estimator).verify_server(server, timeout_ms)


async def verify_servers(
    servers: Sequence[ServerDescriptor],
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    estimator: Optional[TokenEstimator] = None,
) -> List[VerificationResult]:
    """Verify many servers concurrently with default settings."""
    return await Verifier(estimator=estimator).verify_servers(servers, timeout_ms)
