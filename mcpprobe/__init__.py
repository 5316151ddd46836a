"""
mcpprobe - Verify MCP tool servers from the command line.

Connects to a server over stdio, Streamable HTTP or SSE, runs the protocol
handshake, lists its tools, and reports latency and the token cost of
advertising those tools to a model.

Usage:
    mcpprobe verify --mcp-stdio everything "npx -y @modelcontextprotocol/server-everything"
    mcpprobe verify --mcp-http notion https://mcp.notion.com/mcp --auth "$TOKEN"
    mcpprobe verify --all
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

from mcpprobe.verifier.schema import (
    ServerDescriptor,
    TransportKind,
    VerificationResult,
    VerificationStatus,
)
from mcpprobe.verifier.parser import ParseError, parse_arguments
from mcpprobe.verifier.packages import identify
from mcpprobe.verifier.client import Verifier, verify_server, verify_servers

__all__ = [
    "ServerDescriptor",
    "TransportKind",
    "VerificationResult",
    "VerificationStatus",
    "ParseError",
    "parse_arguments",
    "identify",
    "Verifier",
    "verify_server",
    "verify_servers",
    "__version__",
]
