"""
Recover the package behind a launcher command.

``npx chrome-devtools-mcp@0.2.7`` runs the npm package ``chrome-devtools-mcp``
at version ``0.2.7``; ``pipx run --spec poetry==1.7.1 poetry`` runs ``poetry``
1.7.1. This is a static best-effort heuristic: it never raises and returns
``None`` for commands that are not package launchers.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence, Set, Tuple
from urllib.parse import quote

import httpx

from mcpprobe.verifier.schema import PackageIdentity, ServerDescriptor, TransportKind

logger = logging.getLogger(__name__)

JS_LAUNCHERS = ("npx", "bunx")
PYTHON_LAUNCHERS = ("uvx", "pipx")

_NPX_PACKAGE_FLAGS = ("-p", "--package")
_UVX_VALUE_FLAGS = {"--from", "--with", "--python", "-p", "--index-url"}
_PIPX_GLOBAL_VALUE_FLAGS = {"--python"}
_PIPX_RUN_VALUE_FLAGS = {"--spec", "--python"}

DIST_TAGS = {"latest", "next", "beta", "alpha", "rc", "dev", "canary"}
_SEMVER = re.compile(r"^\d+\.\d+\.\d+(?:-[\w.-]+)?(?:\+[\w.-]+)?$")

NPM_REGISTRY_URL = "https://registry.npmjs.org/{name}"
PYPI_URL = "https://pypi.org/pypi/{name}/json"


def _split_js_spec(spec: str) -> PackageIdentity:
    # A leading "@" is a scope, not a version separator.
    at = spec.rfind("@")
    if at > 0:
        name, version = spec[:at], spec[at + 1:]
        return PackageIdentity(name=name, version=version or None)
    return PackageIdentity(name=spec)


def _scan(args: Sequence[str], value_flags: Set[str]) -> Tuple[List[str], dict]:
    """
    Split ``args`` into positional tokens and captured flag values.

    Flags in ``value_flags`` consume the following token (or an ``=value``
    suffix). Any other token starting with ``-`` is skipped on its own.
    """
    positionals: List[str] = []
    values: dict = {}
    i = 0
    while i < len(args):
        token = args[i]
        flag, eq, inline = token.partition("=")
        if flag in value_flags:
            if eq:
                values.setdefault(flag, inline)
                i += 1
            else:
                if i + 1 < len(args):
                    values.setdefault(flag, args[i + 1])
                i += 2
            continue
        if token.startswith("-"):
            i += 1
            continue
        positionals.append(token)
        i += 1
    return positionals, values


def _identify_js(args: Sequence[str]) -> Optional[PackageIdentity]:
    positionals, values = _scan(args, set(_NPX_PACKAGE_FLAGS))
    spec = values.get("-p") or values.get("--package")
    if not spec and positionals:
        spec = positionals[0]
    if not spec:
        return None
    return _split_js_spec(spec)


def _identify_uvx(args: Sequence[str]) -> Optional[PackageIdentity]:
    positionals, _ = _scan(args, _UVX_VALUE_FLAGS)
    if not positionals:
        return None
    return PackageIdentity(name=positionals[0])


def _identify_pipx(args: Sequence[str]) -> Optional[PackageIdentity]:
    # Global flags may precede the "run" subcommand.
    i = 0
    while i < len(args) and args[i] != "run":
        token = args[i]
        if token in _PIPX_GLOBAL_VALUE_FLAGS:
            i += 2
        elif token.startswith("-"):
            i += 1
        else:
            return None
    if i >= len(args):
        return None

    positionals, values = _scan(args[i + 1:], _PIPX_RUN_VALUE_FLAGS)
    spec = values.get("--spec")
    if spec and "==" in spec:
        name, _, version = spec.partition("==")
        if name:
            return PackageIdentity(name=name, version=version or None)
    if not positionals:
        return None
    return PackageIdentity(name=positionals[0])


def identify(launcher: str, args: Optional[Sequence[str]] = None) -> Optional[PackageIdentity]:
    """
    Identify the package a launcher command runs.

    >>> identify("npx", ["-y", "chrome-devtools-mcp@0.2.7"])
    PackageIdentity(name='chrome-devtools-mcp', version='0.2.7')
    >>> identify("python", ["-m", "server"]) is None
    True
    """
    args = list(args or [])
    try:
        if launcher in JS_LAUNCHERS:
            return _identify_js(args)
        if launcher == "uvx":
            return _identify_uvx(args)
        if launcher == "pipx":
            return _identify_pipx(args)
    except ValueError:
        # e.g. a spec like "@" that leaves an empty name
        logger.debug("Could not identify package for %s %s", launcher, args)
    return None


def is_python_launcher(command: str) -> bool:
    """True when ``command`` runs packages from PyPI (``pipx``/``uvx``)."""
    first = (command or "").strip().split()
    return bool(first) and first[0] in PYTHON_LAUNCHERS


# ── Registry lookup ───────────────────────────────────────────────────────


async def fetch_latest_version(
    name: str,
    python: bool,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 5.0,
) -> Optional[str]:
    """Latest published version from PyPI or npm, or ``None`` on any failure."""
    if python:
        url = PYPI_URL.format(name=quote(name, safe=""))
    else:
        url = NPM_REGISTRY_URL.format(name=quote(name, safe=""))

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    try:
        response = await client.get(url, headers={"Accept": "application/json"})
        if response.status_code != 200:
            logger.debug("Registry lookup for %s returned HTTP %s", name, response.status_code)
            return None
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("Registry lookup for %s failed: %s", name, exc)
        return None
    finally:
        if owns_client:
            await client.aclose()

    if python:
        return (data.get("info") or {}).get("version") or None
    return (data.get("dist-tags") or {}).get("latest") or data.get("version") or None


async def resolve_package_version(
    server: ServerDescriptor,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Version of the package a stdio server runs, or ``"unknown"``.

    A concrete version in the command wins; dist tags such as ``latest`` and
    bare package names fall back to a registry lookup.
    """
    if server.kind is not TransportKind.STDIO or not server.command:
        return "unknown"

    identity = identify(server.command, server.args)
    if identity is None:
        return "unknown"

    python = is_python_launcher(server.command)
    if identity.version:
        if python and identity.version.lower() not in DIST_TAGS:
            return identity.version
        if not python and _SEMVER.match(identity.version):
            return identity.version

    return await fetch_latest_version(identity.name, python, client=client) or "unknown"
