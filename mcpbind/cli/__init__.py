"""mcpbind command-line interface."""

from mcpbind.cli.main import cli, main

__all__ = ["cli", "main"]
