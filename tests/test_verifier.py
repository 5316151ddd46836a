"""Tests for the verifier against real subprocesses and scripted transports."""

import asyncio
import sys
import time
from pathlib import Path

import pytest

from mcpprobe.validation.config import VerifierSettings
from mcpprobe.verifier.client import Verifier, verify_server, verify_servers
from mcpprobe.verifier.schema import (
    Handshake,
    ServerDescriptor,
    ServerInfo,
    ToolDescriptor,
    TransportKind,
    VerificationStatus,
)
from mcpprobe.verifier.stdio import StdioTransport
from mcpprobe.verifier.tokens import CharTokenEstimator, EstimatorError, serialize_tool
from mcpprobe.verifier.transport import MCPTransport

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_server.py"


def fake(mode, name=None, env=None):
    """Descriptor for the fake MCP server running in ``mode``."""
    return ServerDescriptor(
        name=name or mode,
        kind=TransportKind.STDIO,
        command=sys.executable,
        args=[str(FAKE_SERVER), mode],
        env=env or {},
    )


def verify(server, timeout_ms=10000, **kwargs):
    return asyncio.run(Verifier(**kwargs).verify_server(server, timeout_ms))


# ═══════════════════════════════════════════════════════════════════════════════
# Stdio servers
# ═══════════════════════════════════════════════════════════════════════════════

class TestVerifyStdio:
    """End-to-end verification of a spawned server."""

    def test_success(self):
        result = verify(fake("ok"))

        assert result.status is VerificationStatus.SUCCESS
        assert result.error is None
        caps = result.capabilities
        assert [t.name for t in caps.tools] == ["echo", "add"]
        assert set(caps.tool_token_counts) == {t.name for t in caps.tools}
        assert caps.total_tool_tokens == sum(caps.tool_token_counts.values()) + caps.framing_tokens
        assert caps.server_info == ServerInfo(
            name="fake-server", version="0.1.0", protocol_version="2025-06-18"
        )
        assert result.connection_time_ms >= 0

    def test_counts_use_canonical_serialization(self):
        result = verify(fake("ok"))

        estimator = CharTokenEstimator()
        for tool in result.capabilities.tools:
            expected = estimator.estimate(serialize_tool(tool))
            assert result.capabilities.tool_token_counts[tool.name] == expected

    def test_paged_tools(self):
        result = verify(fake("paged"))

        assert [t.name for t in result.capabilities.tools] == ["echo", "add"]

    def test_env_reaches_the_process(self):
        result = verify(fake("env", env={"FAKE_TOOL_NAME": "from_env"}))

        assert [t.name for t in result.capabilities.tools] == ["from_env"]

    def test_server_ping_is_answered(self):
        result = verify(fake("chatty"))

        assert result.ok
        assert [t.name for t in result.capabilities.tools] == ["pong_received"]

    def test_resources_and_prompts(self):
        result = verify(fake("full"))

        caps = result.capabilities
        assert [r.display_name for r in caps.resources] == ["readme"]
        assert [p.name for p in caps.prompts] == ["greet"]
        assert set(caps.tool_token_counts) == {"echo", "add"}

    def test_duplicate_tool_names_fail(self):
        result = verify(fake("duplicate"))

        assert result.status is VerificationStatus.FAILURE
        assert result.capabilities is None
        assert "Duplicate tool name" in result.error

    def test_json_rpc_error_fails(self):
        result = verify(fake("error"))

        assert result.status is VerificationStatus.FAILURE
        assert "tools unavailable" in result.error

    def test_id_mismatch_fails(self):
        result = verify(fake("badid"))

        assert result.status is VerificationStatus.FAILURE
        assert "does not match" in result.error

    def test_crash_is_failure_with_stderr(self):
        """A process that dies early is a failure, not a timeout."""
        result = verify(fake("crash"))

        assert result.status is VerificationStatus.FAILURE
        assert "exit code 3" in result.error
        assert "fatal: missing API key" in result.error

    def test_missing_command(self):
        server = ServerDescriptor(
            name="ghost", kind=TransportKind.STDIO, command="definitely-not-a-real-mcp-server-binary"
        )

        result = verify(server)

        assert result.status is VerificationStatus.FAILURE
        assert "not found" in result.error

    def test_timeout(self):
        result = verify(fake("slow"), timeout_ms=500)

        assert result.status is VerificationStatus.TIMEOUT
        assert result.error == "handshake exceeded 500ms"
        assert result.capabilities is None
        assert result.connection_time_ms >= 400


class TestProcessCleanup:
    """The spawned process is stopped exactly once on every path."""

    @pytest.fixture
    def transports(self, monkeypatch):
        created = []
        original_open = Verifier.open_transport
        original_shutdown = StdioTransport._shutdown

        def open_transport(self, server):
            transport = original_open(self, server)
            transport.shutdown_calls = 0
            created.append(transport)
            return transport

        async def counting_shutdown(self):
            self.shutdown_calls += 1
            await original_shutdown(self)

        monkeypatch.setattr(Verifier, "open_transport", open_transport)
        monkeypatch.setattr(StdioTransport, "_shutdown", counting_shutdown)
        return created

    @pytest.mark.parametrize("mode,timeout_ms", [
        ("ok", 10000),
        ("crash", 10000),
        ("badid", 10000),
        ("slow", 300),
    ])
    def test_stopped_once(self, transports, mode, timeout_ms):
        verify(fake(mode), timeout_ms=timeout_ms)

        assert len(transports) == 1
        transport = transports[0]
        assert transport.shutdown_calls == 1
        assert transport.stopped
        assert transport.process.returncode is not None
        assert not transport.is_running


# ═══════════════════════════════════════════════════════════════════════════════
# Scripted transports
# ═══════════════════════════════════════════════════════════════════════════════

class DelayedTransport(MCPTransport):
    """Completes the handshake after ``delay`` seconds."""

    def __init__(self, server, delay, tools=None):
        super().__init__(server)
        self.delay = delay
        self.tools = tools if tools is not None else [ToolDescriptor(name="t1"), ToolDescriptor(name="t2")]
        self.shutdowns = 0

    async def start(self):
        pass

    async def _shutdown(self):
        self.shutdowns += 1

    async def _exchange(self, request):
        raise NotImplementedError

    async def _deliver(self, message):
        raise NotImplementedError

    async def handshake(self):
        await asyncio.sleep(self.delay)
        return Handshake(server_info=ServerInfo(name="delayed"), tools=self.tools)


class DelayedVerifier(Verifier):
    """Verifier whose servers answer after ``delays[name]`` seconds."""

    def __init__(self, delays, **kwargs):
        super().__init__(**kwargs)
        self.delays = delays
        self.transports = {}

    def open_transport(self, server):
        transport = DelayedTransport(server, self.delays[server.name])
        self.transports[server.name] = transport
        return transport


def named(name):
    return ServerDescriptor(name=name, kind=TransportKind.HTTP, url=f"https://{name}.example.com/mcp")


class TestTimeoutBoundary:
    """Timeout versus completion, without real I/O."""

    def test_completes_within_budget(self):
        verifier = DelayedVerifier({"fast": 0.01})

        result = asyncio.run(verifier.verify_server(named("fast"), timeout_ms=2000))

        assert result.status is VerificationStatus.SUCCESS
        assert verifier.transports["fast"].shutdowns == 1

    def test_exceeds_budget(self):
        verifier = DelayedVerifier({"slow": 5})

        started = time.perf_counter()
        result = asyncio.run(verifier.verify_server(named("slow"), timeout_ms=50))
        elapsed = time.perf_counter() - started

        assert result.status is VerificationStatus.TIMEOUT
        assert result.error == "handshake exceeded 50ms"
        assert elapsed < 2
        assert verifier.transports["slow"].shutdowns == 1

    def test_completes_just_inside_budget(self):
        verifier = DelayedVerifier({"close": 0.25})

        result = asyncio.run(verifier.verify_server(named("close"), timeout_ms=400))

        assert result.status is VerificationStatus.SUCCESS
        assert 240 <= result.connection_time_ms < 400

    def test_exceeds_budget_just_outside(self):
        verifier = DelayedVerifier({"late": 0.45})

        result = asyncio.run(verifier.verify_server(named("late"), timeout_ms=300))

        assert result.status is VerificationStatus.TIMEOUT
        assert result.error == "handshake exceeded 300ms"
        assert 290 <= result.connection_time_ms < 450
        assert verifier.transports["late"].shutdowns == 1

    def test_default_timeout_is_used(self):
        verifier = DelayedVerifier({"slow": 5}, default_timeout_ms=30)

        result = asyncio.run(verifier.verify_server(named("slow")))

        assert result.error == "handshake exceeded 30ms"

    @pytest.mark.parametrize("timeout_ms", [0, -1])
    def test_non_positive_timeout(self, timeout_ms):
        with pytest.raises(ValueError):
            asyncio.run(DelayedVerifier({"x": 0}).verify_server(named("x"), timeout_ms=timeout_ms))

    def test_empty_tool_list_is_success(self):
        verifier = DelayedVerifier({"empty": 0})
        verifier.open_transport = lambda server: DelayedTransport(server, 0, tools=[])

        result = asyncio.run(verifier.verify_server(named("empty")))

        assert result.ok
        assert result.capabilities.tools == []
        assert result.capabilities.total_tool_tokens == result.capabilities.framing_tokens


class TestBatch:
    """verify_servers runs attempts independently and keeps input order."""

    def test_results_in_input_order(self):
        verifier = DelayedVerifier({"a": 0.2, "b": 0.01, "c": 0.1})

        results = asyncio.run(verifier.verify_servers([named("a"), named("b"), named("c")], 2000))

        assert [r.server.name for r in results] == ["a", "b", "c"]
        assert all(r.ok for r in results)

    def test_runs_concurrently(self):
        verifier = DelayedVerifier({name: 0.3 for name in "abcde"})

        started = time.perf_counter()
        asyncio.run(verifier.verify_servers([named(n) for n in "abcde"], 5000))

        assert time.perf_counter() - started < 1.2

    def test_one_timeout_does_not_affect_others(self):
        verifier = DelayedVerifier({"slow": 5, "fast": 0.01})

        results = asyncio.run(verifier.verify_servers([named("slow"), named("fast")], 200))

        assert [r.status for r in results] == [VerificationStatus.TIMEOUT, VerificationStatus.SUCCESS]

    def test_mixed_real_processes(self):
        ghost = ServerDescriptor(
            name="ghost", kind=TransportKind.STDIO, command="definitely-not-a-real-mcp-server-binary"
        )

        results = asyncio.run(verify_servers([fake("ok"), ghost, fake("slow")], timeout_ms=1500))

        assert [r.server.name for r in results] == ["ok", "ghost", "slow"]
        assert [r.status for r in results] == [
            VerificationStatus.SUCCESS,
            VerificationStatus.FAILURE,
            VerificationStatus.TIMEOUT,
        ]

    def test_empty_batch(self):
        assert asyncio.run(Verifier().verify_servers([])) == []


class TestEstimatorFailures:
    """Estimator errors propagate from single verification, not from batches."""

    class Broken:
        reentrant = True

        def estimate(self, text):
            raise RuntimeError("tokenizer unavailable")

    def test_single_attempt_raises(self):
        verifier = DelayedVerifier({"x": 0}, estimator=self.Broken())

        with pytest.raises(EstimatorError):
            asyncio.run(verifier.verify_server(named("x")))

    def test_batch_reports_failure(self):
        verifier = DelayedVerifier({"x": 0, "y": 0}, estimator=self.Broken())

        results = asyncio.run(verifier.verify_servers([named("x"), named("y")]))

        assert [r.status for r in results] == [VerificationStatus.FAILURE] * 2
        assert results[0].error.startswith("EstimatorError: ")
        assert verifier.transports["x"].shutdowns == 1

    def test_module_level_single_form(self):
        with pytest.raises(EstimatorError):
            asyncio.run(verify_server(fake("ok"), estimator=self.Broken()))


class TestFromSettings:
    """Verifier built from config."""

    def test_settings_are_applied(self):
        settings = VerifierSettings(timeout_ms=1234, chars_per_token=2, include_framing=False)

        verifier = Verifier.from_settings(settings, client_name="custom")

        assert verifier.default_timeout_ms == 1234
        assert verifier.client_name == "custom"
        assert verifier.pricer.estimator.chars_per_token == 2
        assert verifier.pricer.include_framing is False

    def test_transport_selection(self):
        verifier = Verifier()

        assert isinstance(verifier.open_transport(fake("ok")), StdioTransport)
        assert not isinstance(verifier.open_transport(named("h")), StdioTransport)
