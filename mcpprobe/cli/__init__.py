"""mcpprobe command-line interface."""

from mcpprobe.cli.main import cli, main

__all__ = ["cli", "main"]
