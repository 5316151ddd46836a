"""
mcpprobe CLI - Verify MCP servers from the command line.

Run `mcpprobe verify` with server flags, or with --all / --mcp-name to check
servers from .mcpprobe/config.yaml.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import click
import httpx
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from mcpprobe import __version__
from mcpprobe.validation.config import Config, ConfigError
from mcpprobe.verifier.client import Verifier
from mcpprobe.verifier.packages import identify, resolve_package_version
from mcpprobe.verifier.parser import ParseError, parse_arguments
from mcpprobe.verifier.report import format_results, results_to_dict, summarize
from mcpprobe.verifier.schema import (
    ServerDescriptor,
    TransportKind,
    VerificationResult,
    VerificationStatus,
)

console = Console()
err_console = Console(stderr=True)

USAGE = """\
[bold]Usage:[/bold] mcpprobe verify \\[options] \\[server flags]

[bold]Verify configured servers:[/bold]
  --mcp-name <name>                Verify a configured MCP server by name
  --all                            Verify all configured MCP servers
  --timeout <ms>                   Handshake timeout in milliseconds

[bold]Verify a server directly:[/bold]
  --mcp-stdio <name> <command>     Verify a STDIO MCP server
  --mcp-http <name> <url>          Verify a Streamable HTTP MCP server
  --mcp-sse <name> <url>           Verify a legacy SSE MCP server
  --args <args>                    Additional arguments for a STDIO server
  --env <env_vars>                 Environment variables for a STDIO server
  --auth <token>                   Bearer token for HTTP/SSE
  --header "Key: Value"            Extra request header for HTTP/SSE

[bold]Examples:[/bold]
  mcpprobe verify --all
  mcpprobe verify --mcp-name exa
  mcpprobe verify --mcp-stdio everything "npx -y @modelcontextprotocol/server-everything"
  mcpprobe verify --mcp-http github https://api.githubcopilot.com/mcp/ --auth "$GITHUB_TOKEN"
"""

TROUBLESHOOTING = [
    "Ensure MCP server packages are installed",
    "Check environment variables are set correctly",
    "Verify network connectivity for HTTP/SSE servers",
    "Try increasing timeout with --timeout <ms>",
    "Check .mcpprobe/config.yaml for syntax errors",
]


def _configure_logging(level: str) -> None:
    """Route library logging through rich, on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


async def _resolve_versions(results: Sequence[VerificationResult]) -> Dict[str, str]:
    """Package versions for successful stdio servers, keyed by server name."""
    servers = [r.server for r in results if r.ok and r.server.kind is TransportKind.STDIO]
    if not servers:
        return {}
    async with httpx.AsyncClient(timeout=5.0) as client:
        versions = await asyncio.gather(
            *(resolve_package_version(server, client=client) for server in servers)
        )
    return {server.name: version for server, version in zip(servers, versions)}


async def _run_verification(
    verifier: Verifier,
    servers: List[ServerDescriptor],
    timeout: Optional[int],
    check_versions: bool,
):
    results = await verifier.verify_servers(servers, timeout)
    versions = await _resolve_versions(results) if check_versions else {}
    return results, versions


def _select_servers(
    config: Config,
    server_args: Sequence[str],
    verify_all: bool,
    mcp_names: Sequence[str],
) -> Optional[List[ServerDescriptor]]:
    """Servers to verify, or None when nothing was asked for."""
    if mcp_names and verify_all:
        raise click.UsageError("Cannot use --mcp-name and --all together. Choose one option.")
    if server_args and (mcp_names or verify_all):
        raise click.UsageError(
            "Cannot mix direct MCP configuration with --mcp-name or --all. Choose one approach."
        )

    if server_args:
        return parse_arguments(server_args)
    if verify_all:
        return config.server_descriptors()
    if mcp_names:
        servers = config.server_descriptors(mcp_names)
        found = {s.name.lower() for s in servers}
        missing = [n for n in mcp_names if n.lower() not in found]
        if missing:
            raise ConfigError(f"No enabled MCP server named: {', '.join(missing)}")
        return servers
    return None


def _print_summary(results: Sequence[VerificationResult]) -> None:
    counts = summarize(results)
    console.print("[bold]Summary:[/bold]")
    console.print(f"  ✅ Successful: {counts[VerificationStatus.SUCCESS.value]}")
    if counts[VerificationStatus.FAILURE.value]:
        console.print(f"  ❌ Failed: {counts[VerificationStatus.FAILURE.value]}")
    if counts[VerificationStatus.TIMEOUT.value]:
        console.print(f"  ⏱️  Timeout: {counts[VerificationStatus.TIMEOUT.value]}")
    console.print()


@click.group()
@click.version_option(__version__, "--version", "-v", prog_name="mcpprobe")
def cli() -> None:
    """
    mcpprobe - Verify MCP servers and measure their tool token cost.

    \b
    Examples:
        mcpprobe verify --all
        mcpprobe verify --mcp-stdio everything "npx -y @modelcontextprotocol/server-everything"
        mcpprobe identify npx -y chrome-devtools-mcp@0.2.7
    """


@cli.command(context_settings={"ignore_unknown_options": True})
@click.option("--timeout", type=click.IntRange(min=1), default=None, help="Handshake timeout in ms")
@click.option("--all", "verify_all", is_flag=True, help="Verify all configured servers")
@click.option("--mcp-name", "mcp_names", multiple=True, help="Verify a configured server by name")
@click.option(
    "--config", "config_path",
    type=click.Path(path_type=Path), default=None,
    help="Config file to use instead of .mcpprobe/config.yaml",
)
@click.option("--debug", is_flag=True, help="Show protocol details and debug logs")
@click.option("--check-versions", is_flag=True, help="Look up package versions for stdio servers")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.argument("server_args", nargs=-1, type=click.UNPROCESSED)
def verify(
    timeout: Optional[int],
    verify_all: bool,
    mcp_names: tuple,
    config_path: Optional[Path],
    debug: bool,
    check_versions: bool,
    as_json: bool,
    server_args: tuple,
) -> None:
    """
    Connect to MCP servers and list their tools.

    Exits with status 1 when any server fails or times out.
    """
    try:
        config = Config.load(config_path)
        settings = config.merged
        _configure_logging("DEBUG" if debug else settings.log_level)
        servers = _select_servers(config, list(server_args), verify_all, mcp_names)
    except ParseError as e:
        err_console.print("[red]MCP Configuration Error:[/red]")
        err_console.print(f"[red]{escape(str(e))}[/red]")
        err_console.print("[dim]For help with the correct syntax, run: mcpprobe verify[/dim]")
        sys.exit(1)
    except ConfigError as e:
        err_console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        sys.exit(1)

    if servers is None:
        console.print(USAGE)
        return
    if not servers:
        err_console.print("[yellow]No MCP servers configured.[/yellow]")
        sys.exit(1)

    verifier = Verifier.from_settings(settings.verifier)
    label = f"Verifying {len(servers)} MCP server{'s' if len(servers) != 1 else ''}..."
    with console.status(f"[bold blue]{label}[/bold blue]", spinner="dots"):
        results, versions = asyncio.run(
            _run_verification(verifier, servers, timeout, check_versions)
        )

    if as_json:
        payload = results_to_dict(results)
        for entry, result in zip(payload, results):
            if result.server.name in versions:
                entry["package_version"] = versions[result.server.name]
        click.echo(json.dumps(payload, indent=2))
    else:
        console.print()
        console.print("[bold]Verification Results:[/bold]")
        console.print()
        console.print(format_results(results, debug=debug, package_versions=versions))

        if len(results) > 1:
            _print_summary(results)

        if any(not r.ok for r in results):
            console.print("[bold]Troubleshooting Tips:[/bold]")
            for i, tip in enumerate(TROUBLESHOOTING, 1):
                console.print(f"  {i}. {tip}")

    if any(not r.ok for r in results):
        sys.exit(1)


@cli.command("identify", context_settings={"ignore_unknown_options": True})
@click.option("--resolve", is_flag=True, help="Look up the version on npm / PyPI when unpinned")
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def identify_command(resolve: bool, command: str, args: tuple) -> None:
    """
    Show the package a launcher command runs.

    \b
    Examples:
        mcpprobe identify npx -y chrome-devtools-mcp@0.2.7
        mcpprobe identify pipx run --spec poetry==1.7.1 poetry
    """
    identity = identify(command, list(args))
    if identity is None:
        err_console.print(f"[yellow]{command} is not a recognized package launcher.[/yellow]")
        sys.exit(1)

    if resolve:
        server = ServerDescriptor(name=identity.name, kind=TransportKind.STDIO, command=command, args=list(args))
        version = asyncio.run(resolve_package_version(server))
        console.print(f"{identity.name}@{version}")
    else:
        console.print(str(identity))


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
