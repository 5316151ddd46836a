"""Tests for package identity extraction and registry lookups."""

import asyncio
import json

import httpx
import pytest

from mcpprobe.verifier.packages import (
    fetch_latest_version,
    identify,
    is_python_launcher,
    resolve_package_version,
)
from mcpprobe.verifier.schema import PackageIdentity, ServerDescriptor, TransportKind


def _registry(routes, default=(404, {"error": "not found"})):
    """An httpx client whose responses come from ``routes`` (url -> (status, body))."""
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        requested.append(url)
        status, body = routes.get(url, default)
        return httpx.Response(status, content=json.dumps(body).encode())

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requested


def _stdio(command, *args):
    return ServerDescriptor(name="s", kind=TransportKind.STDIO, command=command, args=list(args))


# ═══════════════════════════════════════════════════════════════════════════════
# npx / bunx
# ═══════════════════════════════════════════════════════════════════════════════

class TestIdentifyJs:
    """Tests for npx and bunx."""

    def test_versioned_package(self):
        assert identify("npx", ["-y", "chrome-devtools-mcp@0.2.7"]) == PackageIdentity(
            name="chrome-devtools-mcp", version="0.2.7"
        )

    def test_scoped_package_with_tag(self):
        assert identify("npx", ["--yes", "@scope/server@latest"]) == PackageIdentity(
            name="@scope/server", version="latest"
        )

    def test_scoped_package_without_version(self):
        identity = identify("bunx", ["@modelcontextprotocol/server-everything"])

        assert identity.name == "@modelcontextprotocol/server-everything"
        assert identity.version is None

    def test_flags_are_skipped(self):
        identity = identify("npx", ["--quiet", "-y", "server-memory", "--port", "8080"])

        assert identity == PackageIdentity(name="server-memory")

    def test_package_flag(self):
        assert identify("npx", ["-p", "pkg@1.0.0", "bin-name"]) == PackageIdentity(
            name="pkg", version="1.0.0"
        )
        assert identify("npx", ["--package=@s/pkg@2.0.0", "bin"]) == PackageIdentity(
            name="@s/pkg", version="2.0.0"
        )

    def test_no_positional(self):
        assert identify("npx", ["-y"]) is None
        assert identify("npx", []) is None

    def test_trailing_at(self):
        identity = identify("npx", ["pkg@"])

        assert identity == PackageIdentity(name="pkg")

    def test_lone_at_never_raises(self):
        assert identify("npx", ["@"]) == PackageIdentity(name="@")


# ═══════════════════════════════════════════════════════════════════════════════
# uvx / pipx
# ═══════════════════════════════════════════════════════════════════════════════

class TestIdentifyPython:
    """Tests for uvx and pipx."""

    def test_uvx_plain(self):
        assert identify("uvx", ["mcp-server-git"]) == PackageIdentity(name="mcp-server-git")

    def test_uvx_from_is_skipped(self):
        identity = identify("uvx", ["--from", "git+https://github.com/x/y", "mcp-server-y"])

        assert identity == PackageIdentity(name="mcp-server-y")

    def test_uvx_keeps_spec_opaque(self):
        assert identify("uvx", ["mcp-server-fetch==1.2.0"]) == PackageIdentity(
            name="mcp-server-fetch==1.2.0"
        )

    def test_uvx_other_value_flags(self):
        identity = identify("uvx", ["--python", "3.12", "--with", "rich", "tool"])

        assert identity == PackageIdentity(name="tool")

    def test_pipx_spec_with_version(self):
        assert identify("pipx", ["run", "--spec", "poetry==1.7.1", "poetry"]) == PackageIdentity(
            name="poetry", version="1.7.1"
        )

    def test_pipx_positional(self):
        assert identify("pipx", ["run", "--python", "3.11", "black"]) == PackageIdentity(name="black")

    def test_pipx_spec_without_version(self):
        assert identify("pipx", ["run", "--spec", "git+https://x/y", "y"]) == PackageIdentity(name="y")

    def test_pipx_global_flags_before_run(self):
        assert identify("pipx", ["--quiet", "run", "cowsay"]) == PackageIdentity(name="cowsay")

    def test_pipx_requires_run(self):
        assert identify("pipx", ["install", "black"]) is None
        assert identify("pipx", []) is None


class TestIdentifyOther:
    """Non-launchers are not applicable."""

    @pytest.mark.parametrize("launcher", ["python", "node", "docker", "NPX", ""])
    def test_returns_none(self, launcher):
        assert identify(launcher, ["-m", "server"]) is None

    def test_is_python_launcher(self):
        assert is_python_launcher("uvx")
        assert is_python_launcher("pipx run black")
        assert not is_python_launcher("npx")
        assert not is_python_launcher("")


# ═══════════════════════════════════════════════════════════════════════════════
# Registry lookups
# ═══════════════════════════════════════════════════════════════════════════════

class TestResolvePackageVersion:
    """Tests for resolve_package_version with a mocked registry."""

    def test_pinned_npm_version_skips_registry(self):
        client, requested = _registry({})

        version = asyncio.run(resolve_package_version(_stdio("npx", "-y", "pkg@1.2.3"), client=client))

        assert version == "1.2.3"
        assert requested == []

    def test_npm_latest_tag_is_looked_up(self):
        client, requested = _registry({
            "https://registry.npmjs.org/pkg": (200, {"dist-tags": {"latest": "4.5.6"}}),
        })

        version = asyncio.run(resolve_package_version(_stdio("npx", "pkg@latest"), client=client))

        assert version == "4.5.6"
        assert requested == ["https://registry.npmjs.org/pkg"]

    def test_scoped_name_is_quoted(self):
        client, requested = _registry({}, default=(200, {"dist-tags": {"latest": "1.0.0"}}))

        version = asyncio.run(resolve_package_version(_stdio("npx", "@scope/pkg"), client=client))

        assert version == "1.0.0"
        assert "%2F" in requested[0]

    def test_pypi_lookup(self):
        client, _ = _registry({
            "https://pypi.org/pypi/mcp-server-git/json": (200, {"info": {"version": "0.6.2"}}),
        })

        version = asyncio.run(resolve_package_version(_stdio("uvx", "mcp-server-git"), client=client))

        assert version == "0.6.2"

    def test_pipx_pinned_version(self):
        client, requested = _registry({})

        version = asyncio.run(resolve_package_version(
            _stdio("pipx", "run", "--spec", "poetry==1.7.1", "poetry"), client=client
        ))

        assert version == "1.7.1"
        assert requested == []

    def test_registry_failure_is_unknown(self):
        client, _ = _registry({})

        version = asyncio.run(resolve_package_version(_stdio("npx", "missing-pkg"), client=client))

        assert version == "unknown"

    def test_network_error_is_unknown(self):
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        assert asyncio.run(fetch_latest_version("pkg", python=False, client=client)) is None

    def test_not_a_launcher(self):
        assert asyncio.run(resolve_package_version(_stdio("python", "server.py"))) == "unknown"

    def test_streamed_server(self):
        server = ServerDescriptor(name="h", kind=TransportKind.HTTP, url="https://a.example.com/mcp")

        assert asyncio.run(resolve_package_version(server)) == "unknown"
