"""CLI entry point for civic-mcp.

Registered as `civic-mcp` console script in pyproject.toml.
"""

from __future__ import annotations

import click

from cli.call_cmd import call_cmd
from cli.serve_cmd import serve_cmd
from cli.tools_cmd import tools_cmd
from sandbox import __version__


@click.group()
@click.version_option(version=__version__, prog_name="civic-mcp")
def cli() -> None:
    """civic-mcp: sandboxed site adapters exposed as MCP tools."""


cli.add_command(serve_cmd, "serve")
cli.add_command(tools_cmd, "tools")
cli.add_command(call_cmd, "call")


if __name__ == "__main__":
    cli()
