"""
Parse ``--mcp-*`` flag sequences into server descriptors.

Examples::

    --mcp-stdio everything "npx -y @modelcontextprotocol/server-everything"
    --mcp-stdio supabase "npx -y @supabase/mcp-server-supabase" --env "TOKEN=abc"
    --mcp-http notion https://mcp.notion.com/mcp --auth "$NOTION_TOKEN"
    --mcp-sse events https://example.com/sse --header "X-Team: core"

Everything after a stdio command, up to the next recognized flag, is passed
to the command as arguments. Parsing is pure and order-preserving.
"""

from __future__ import annotations

import shlex
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from mcpprobe.verifier.schema import (
    ServerDescriptor,
    TransportKind,
    looks_like_command,
    looks_like_url,
)


class ParseError(ValueError):
    """Raised when a flag sequence cannot be turned into server descriptors."""

    def __init__(self, message: str, token: Optional[str] = None):
        super().__init__(message)
        self.token = token


TRANSPORT_FLAGS: Dict[str, TransportKind] = {
    "--mcp-stdio": TransportKind.STDIO,
    "--mcp-http": TransportKind.HTTP,
    "--mcp-sse": TransportKind.SSE,
}
STDIO_MODIFIERS = ("--args", "--env")
STREAMED_MODIFIERS = ("--auth", "--header")
RECOGNIZED_FLAGS = set(TRANSPORT_FLAGS) | set(STDIO_MODIFIERS) | set(STREAMED_MODIFIERS)


def _split(text: str, token: str) -> List[str]:
    try:
        return shlex.split(text)
    except ValueError as exc:
        raise ParseError(f"Cannot split {token} value {text!r}: {exc}", token)


def _parse_env(text: str) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for word in _split(text, "--env"):
        key, sep, value = word.partition("=")
        if not sep or not key:
            raise ParseError(f"Invalid --env entry {word!r}; expected KEY=VALUE", "--env")
        env[key] = value
    return env


def _parse_header(text: str) -> Tuple[str, str]:
    key, sep, value = text.partition(":")
    key, value = key.strip(), value.strip()
    if not sep or not key or not value:
        raise ParseError(f"Invalid --header value {text!r}; expected 'Key: Value'", "--header")
    return key, value


def _take_value(args: Sequence[str], i: int, flag: str) -> str:
    """Return the token after ``flag`` at index ``i`` or fail."""
    if i + 1 >= len(args) or args[i + 1] in RECOGNIZED_FLAGS:
        raise ParseError(f"{flag} requires a value", flag)
    return args[i + 1]


def _take_name(args: Sequence[str], i: int, flag: str) -> str:
    if i + 1 >= len(args) or args[i + 1].startswith("--"):
        raise ParseError(f"{flag} requires a server name, e.g. {flag} <name> ...", flag)
    return args[i + 1]


def _build(**fields) -> ServerDescriptor:
    try:
        return ServerDescriptor(**fields)
    except ValidationError as exc:
        raise ParseError(f"Invalid server '{fields.get('name')}': {exc}", fields.get("name"))


def _parse_stdio(args: Sequence[str], start: int) -> Tuple[ServerDescriptor, int]:
    flag = args[start]
    name = _take_name(args, start, flag)
    if looks_like_command(name):
        raise ParseError(
            f'Invalid MCP name: "{name}". The name appears to be a command; '
            f'use {flag} <name> "<command>"',
            name,
        )

    i = start + 2
    if i >= len(args) or args[i] in RECOGNIZED_FLAGS or args[i].startswith("--mcp-"):
        raise ParseError(
            f'Missing command for MCP server "{name}". Usage: {flag} <name> <command>', flag
        )
    words = _split(args[i], "command")
    if not words:
        raise ParseError(f'Missing command for MCP server "{name}"', flag)
    command, cmd_args = words[0], words[1:]
    env: Dict[str, str] = {}
    i += 1

    while i < len(args):
        token = args[i]
        if token.startswith("--mcp-"):
            break
        if token == "--args":
            cmd_args += _split(_take_value(args, i, token), token)
            i += 2
        elif token == "--env":
            env.update(_parse_env(_take_value(args, i, token)))
            i += 2
        elif token in STREAMED_MODIFIERS:
            raise ParseError(f"{token} is not valid for a stdio server", token)
        else:
            cmd_args.append(token)
            i += 1

    return _build(name=name, kind=TransportKind.STDIO, command=command, args=cmd_args, env=env), i


def _parse_streamed(args: Sequence[str], start: int) -> Tuple[ServerDescriptor, int]:
    flag = args[start]
    kind = TRANSPORT_FLAGS[flag]
    name = _take_name(args, start, flag)
    if looks_like_url(name):
        raise ParseError(
            f'Invalid MCP name: "{name}". The name appears to be a URL; '
            f'use {flag} <name> <url>',
            name,
        )

    i = start + 2
    if i >= len(args) or args[i].startswith("--"):
        raise ParseError(f'Missing URL for MCP server "{name}". Usage: {flag} <name> <url>', flag)
    url = args[i]
    headers: Dict[str, str] = {}
    i += 1

    while i < len(args):
        token = args[i]
        if token.startswith("--mcp-"):
            break
        if token == "--auth":
            value = _take_value(args, i, token)
            headers["Authorization"] = value if value.startswith("Bearer ") else f"Bearer {value}"
            i += 2
        elif token == "--header":
            key, value = _parse_header(_take_value(args, i, token))
            headers[key] = value
            i += 2
        elif token in STDIO_MODIFIERS:
            raise ParseError(f"{token} is only valid for stdio servers", token)
        else:
            raise ParseError(f"Unexpected argument {token!r} for {kind.value} server '{name}'", token)

    return _build(name=name, kind=kind, url=url, headers=headers), i


def parse_arguments(args: Optional[Sequence[str]] = None) -> List[ServerDescriptor]:
    """
    Turn a flag sequence into server descriptors, in input order.

    An empty or missing sequence yields an empty list.

    Raises
    ------
    ParseError
        On any malformed sequence; ``.token`` names the offending token.
    """
    args = list(args or [])
    servers: List[ServerDescriptor] = []
    i = 0

    while i < len(args):
        token = args[i]
        kind = TRANSPORT_FLAGS.get(token)
        if kind is TransportKind.STDIO:
            server, i = _parse_stdio(args, i)
        elif kind is not None:
            server, i = _parse_streamed(args, i)
        elif token in STDIO_MODIFIERS or token in STREAMED_MODIFIERS:
            raise ParseError(f"{token} must follow a server definition", token)
        elif token.startswith("-"):
            raise ParseError(f"Unknown flag {token!r}", token)
        else:
            raise ParseError(f"Unexpected argument {token!r}; expected --mcp-stdio/--mcp-http/--mcp-sse", token)
        servers.append(server)

    return servers
