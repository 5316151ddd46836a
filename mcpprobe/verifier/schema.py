"""Data models for server descriptors, capabilities, and verification results."""

from __future__ import annotations

import re
import shlex
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TransportKind(str, Enum):
    """How to reach a tool server."""

    STDIO = "stdio"
    HTTP = "http"  # Streamable HTTP
    SSE = "sse"  # legacy HTTP+SSE

    @property
    def is_streamed(self) -> bool:
        return self is not TransportKind.STDIO


class VerificationStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


# Names a user probably meant as the command or URL of a --mcp-* flag.
_COMMAND_PATTERNS = [
    re.compile(r"^(npx|bunx|npm|node|uvx|pipx|docker|python|python3|pip|cargo|go)\s"),
    re.compile(r"\s"),
    re.compile(r"""^["'].*["']$"""),
]
_URL_PATTERNS = [
    re.compile(r"^https?://"),
    re.compile(r"^localhost:\d+"),
    re.compile(r"\.[a-z]{2,}(/|$)", re.IGNORECASE),
]


def looks_like_command(name: str) -> bool:
    return any(p.search(name) for p in _COMMAND_PATTERNS)


def looks_like_url(name: str) -> bool:
    return any(p.search(name) for p in _URL_PATTERNS)


class ServerDescriptor(BaseModel):
    """
    Identifies one tool server to verify.

    Stdio servers carry ``command``/``args``/``env``; streamed servers
    (``http``/``sse``) carry ``url``/``headers``. Mixing the two is rejected
    at construction time.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    kind: TransportKind
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("headers")
    @classmethod
    def _normalize_headers(cls, headers: Dict[str, str]) -> Dict[str, str]:
        normalized = {}
        for key, value in headers.items():
            key, value = key.strip(), value.strip()
            if not key or ":" in key:
                raise ValueError(f"invalid header name {key!r}")
            if not value:
                raise ValueError(f"header '{key}' has an empty value")
            normalized[key] = value
        return normalized

    @model_validator(mode="after")
    def _check_transport_fields(self) -> "ServerDescriptor":
        if not self.name:
            raise ValueError("server name must not be empty")
        if self.kind is TransportKind.STDIO:
            if not self.command:
                raise ValueError(f"stdio server '{self.name}' requires a command")
            if self.url is not None or self.headers:
                raise ValueError(f"stdio server '{self.name}' cannot have a url or headers")
        else:
            if not self.url:
                raise ValueError(f"{self.kind.value} server '{self.name}' requires a url")
            if self.command is not None or self.args or self.env:
                raise ValueError(
                    f"{self.kind.value} server '{self.name}' cannot have a command, args or env"
                )
        return self

    @property
    def target(self) -> str:
        """Command line or URL, for display."""
        if self.kind is TransportKind.STDIO:
            return " ".join([self.command or ""] + list(self.args))
        return self.url or ""

    def to_args(self) -> List[str]:
        """
        Serialize to the ``--mcp-*`` flag form understood by ``parse_arguments``.

        Raises ValueError when the name would be rejected by the parser: a
        stdio name that looks like a command, a streamed name that looks
        like a URL, or a name starting with ``--``.
        """
        misleading = looks_like_command if self.kind is TransportKind.STDIO else looks_like_url
        if self.name.startswith("--") or misleading(self.name):
            raise ValueError(f"server name {self.name!r} cannot be written as --mcp-* flags")

        if self.kind is TransportKind.STDIO:
            tokens = [f"--mcp-{self.kind.value}", self.name, shlex.quote(self.command or "")]
            if self.args:
                tokens += ["--args", shlex.join(self.args)]
            if self.env:
                tokens += ["--env", shlex.join(f"{k}={v}" for k, v in self.env.items())]
            return tokens

        tokens = [f"--mcp-{self.kind.value}", self.name, self.url or ""]
        for key, value in self.headers.items():
            tokens += ["--header", f"{key}: {value}"]
        return tokens


class ToolDescriptor(BaseModel):
    """A tool as advertised by ``tools/list``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")

    def canonical_payload(self) -> Dict[str, Any]:
        """The shape that gets priced by the token estimator."""
        return {
            "name": self.name,
            "description": self.description or "",
            "inputSchema": self.input_schema or {},
        }


class ResourceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    uri: str
    name: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")

    @property
    def display_name(self) -> str:
        return self.name or self.uri.rstrip("/").split("/")[-1] or self.uri


class PromptArgument(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    required: Optional[bool] = None


class PromptDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    arguments: List[PromptArgument] = Field(default_factory=list)


class ServerInfo(BaseModel):
    """What the peer said about itself during ``initialize``."""

    model_config = ConfigDict(frozen=True)

    name: str = "unknown"
    version: str = "unknown"
    protocol_version: str = "unknown"


class Handshake(BaseModel):
    """Raw outcome of initialize + tools/list, before any token pricing."""

    model_config = ConfigDict(frozen=True)

    server_info: ServerInfo
    tools: List[ToolDescriptor] = Field(default_factory=list)
    resources: List[ResourceDescriptor] = Field(default_factory=list)
    prompts: List[PromptDescriptor] = Field(default_factory=list)


class Capabilities(BaseModel):
    """Tool list of a verified server plus its token cost."""

    model_config = ConfigDict(frozen=True)

    tools: List[ToolDescriptor] = Field(default_factory=list)
    tool_token_counts: Dict[str, int] = Field(default_factory=dict)
    framing_tokens: int = 0
    total_tool_tokens: int = 0
    server_info: ServerInfo = Field(default_factory=ServerInfo)
    resources: List[ResourceDescriptor] = Field(default_factory=list)
    prompts: List[PromptDescriptor] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_counts(self) -> "Capabilities":
        names = [tool.name for tool in self.tools]
        if len(set(names)) != len(names):
            raise ValueError("tool names must be unique")
        if set(names) != set(self.tool_token_counts):
            raise ValueError("tool_token_counts must have exactly one entry per tool")
        expected = sum(self.tool_token_counts.values()) + self.framing_tokens
        if self.total_tool_tokens != expected:
            raise ValueError(
                f"total_tool_tokens is {self.total_tool_tokens}, expected {expected}"
            )
        return self


class VerificationResult(BaseModel):
    """Outcome of one verification attempt. Built once, never mutated."""

    model_config = ConfigDict(frozen=True)

    server: ServerDescriptor
    status: VerificationStatus
    connection_time_ms: int = 0
    capabilities: Optional[Capabilities] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_status_fields(self) -> "VerificationResult":
        if self.status is VerificationStatus.SUCCESS:
            if self.capabilities is None:
                raise ValueError("a successful result needs capabilities")
            if self.error is not None:
                raise ValueError("a successful result cannot carry an error")
        else:
            if self.capabilities is not None:
                raise ValueError("only successful results carry capabilities")
            if not self.error:
                raise ValueError("an unsuccessful result needs an error message")
        return self

    @property
    def ok(self) -> bool:
        return self.status is VerificationStatus.SUCCESS


class PackageIdentity(BaseModel):
    """Package behind a launcher command such as ``npx foo@1.2.3``."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: Optional[str] = None

    @model_validator(mode="after")
    def _check_name(self) -> "PackageIdentity":
        if not self.name:
            raise ValueError("package name must not be empty")
        return self

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name
