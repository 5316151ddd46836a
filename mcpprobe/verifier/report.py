"""Human-readable rendering of verification results."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from rich.text import Text

from mcpprobe.verifier.schema import TransportKind, VerificationResult, VerificationStatus
from mcpprobe.verifier.tokens import token_level

TOKEN_STYLES = {"low": "green", "medium": "yellow", "high": "red"}

STATUS_ICONS = {
    VerificationStatus.SUCCESS: "✅",
    VerificationStatus.FAILURE: "❌",
    VerificationStatus.TIMEOUT: "⏱️",
}


def _token_text(count: int) -> Text:
    return Text(f"{count:,}", style=TOKEN_STYLES[token_level(count)])


def format_result(
    result: VerificationResult,
    debug: bool = False,
    package_version: Optional[str] = None,
) -> Text:
    """Render one result as a block of styled text."""
    server = result.server
    out = Text()
    out.append(f"{STATUS_ICONS[result.status]} MCP Server: ", style="bold")
    out.append(server.name, style="bold cyan")
    out.append(f" ({server.kind.value.upper()})\n")

    if not result.ok:
        label = "Connection timeout" if result.status is VerificationStatus.TIMEOUT else "Failed"
        out.append(f"   Status: {label} ({result.connection_time_ms}ms)\n", style="red")
        for i, line in enumerate((result.error or "").splitlines()):
            out.append(("   Error: " if i == 0 else "          ") + line + "\n")
        if server.kind is TransportKind.STDIO:
            out.append(f"   Command: {server.target}\n", style="dim")
        else:
            out.append(f"   URL: {server.target}\n", style="dim")
        return out

    caps = result.capabilities
    out.append(f"   Status: Connected successfully ({result.connection_time_ms}ms)\n", style="green")
    out.append(f"   Version: {caps.server_info.version}")
    if package_version and package_version != "unknown":
        out.append(f" (package {package_version})")
    out.append("\n")
    if debug:
        out.append(f"   Protocol: {caps.server_info.protocol_version}\n", style="dim")

    if caps.tools:
        out.append(f"\n   Tools ({len(caps.tools)}) - ")
        out.append_text(_token_text(caps.total_tool_tokens))
        out.append(" tokens:\n")
        for tool in caps.tools:
            out.append(f"   • {tool.name}")
            out.append(f" ({caps.tool_token_counts[tool.name]} tokens)", style="dim")
            if tool.description:
                out.append(f" - {tool.description.splitlines()[0]}")
            out.append("\n")

    if debug and caps.resources:
        out.append(f"\n   Resources ({len(caps.resources)}):\n")
        for resource in caps.resources:
            line = f"   • {resource.display_name}"
            if resource.description:
                line += f" - {resource.description}"
            out.append(line + "\n")

    if debug and caps.prompts:
        out.append(f"\n   Prompts ({len(caps.prompts)}):\n")
        for prompt in caps.prompts:
            line = f"   • {prompt.name}"
            if prompt.description:
                line += f" - {prompt.description}"
            out.append(line + "\n")

    if not caps.tools and not caps.resources and not caps.prompts:
        out.append("   ⚠️  No tools, resources, or prompts available\n", style="yellow")
    return out


def format_results(
    results: Iterable[VerificationResult],
    debug: bool = False,
    package_versions: Optional[Dict[str, str]] = None,
) -> Text:
    """Render every result, separated by blank lines."""
    package_versions = package_versions or {}
    blocks: List[Text] = [
        format_result(r, debug=debug, package_version=package_versions.get(r.server.name))
        for r in results
    ]
    return Text("\n").join(blocks)


def summarize(results: Iterable[VerificationResult]) -> Dict[str, int]:
    """Count results per status."""
    counts = {status.value: 0 for status in VerificationStatus}
    for result in results:
        counts[result.status.value] += 1
    return counts


def results_to_dict(results: Iterable[VerificationResult]) -> List[dict]:
    """JSON-ready form of the results."""
    return [r.model_dump(mode="json", by_alias=True) for r in results]
