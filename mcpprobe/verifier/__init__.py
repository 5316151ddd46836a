"""
MCP server verification.

Connects to a tool server over stdio or HTTP, performs the initialize +
tools/list handshake, measures how long that took, and estimates how many
tokens the advertised tools would cost in a model's context.

Each piece is importable on its own:

- ``parse_arguments``  - ``--mcp-*`` flags → ``ServerDescriptor`` list
- ``identify``         - launcher command → ``PackageIdentity``
- ``Verifier``         - descriptors → ``VerificationResult`` list
"""

from mcpprobe.verifier.schema import (
    Capabilities,
    PackageIdentity,
    ServerDescriptor,
    ServerInfo,
    ToolDescriptor,
    TransportKind,
    VerificationResult,
    VerificationStatus,
)
from mcpprobe.verifier.parser import ParseError, parse_arguments
from mcpprobe.verifier.packages import identify, resolve_package_version
from mcpprobe.verifier.tokens import CharTokenEstimator, EstimatorError, TokenEstimator
from mcpprobe.verifier.transport import MCPConnectionError, MCPProtocolError, MCPTransportError
from mcpprobe.verifier.client import Verifier, verify_server, verify_servers

__all__ = [
    "Capabilities",
    "PackageIdentity",
    "ServerDescriptor",
    "ServerInfo",
    "ToolDescriptor",
    "TransportKind",
    "VerificationResult",
    "VerificationStatus",
    "ParseError",
    "parse_arguments",
    "identify",
    "resolve_package_version",
    "CharTokenEstimator",
    "EstimatorError",
    "TokenEstimator",
    "MCPConnectionError",
    "MCPProtocolError",
    "MCPTransportError",
    "Verifier",
    "verify_server",
    "verify_servers",
]
