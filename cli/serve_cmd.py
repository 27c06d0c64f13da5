"""civic-mcp serve: Run the MCP server over stdio.

stdout belongs to the MCP client, so everything human-readable (logs,
the startup summary, human-in-the-loop prompts) goes to stderr.
"""

from __future__ import annotations

import asyncio
import logging

import click
from rich.console import Console

from sandbox.backends.server import AdapterServer
from sandbox.config import Config, load_config
from sandbox.log_setup import setup_logging

console = Console(stderr=True)
logger = logging.getLogger(__name__)


def load_cli_config(
    config_path: str | None,
    adapters_dir: str | None = None,
    headed: bool = False,
) -> Config:
    """Load config.yaml and apply command-line overrides on top of it."""
    try:
        cfg = load_config(config_path)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    if adapters_dir:
        cfg.runtime.adapters_dir = adapters_dir
    if headed:
        cfg.browser.headless = False
    return cfg


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(),
    default=None,
    help="Path to config.yaml",
)
@click.option("--adapters-dir", type=click.Path(), default=None, help="Adapters directory")
@click.option("--headed", is_flag=True, default=False, help="Show the browser window")
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging")
def serve_cmd(
    config_path: str | None, adapters_dir: str | None, headed: bool, debug: bool
) -> None:
    """Serve every loaded adapter tool over MCP (stdio)."""
    cfg = load_cli_config(config_path, adapters_dir, headed)
    setup_logging(debug=debug or cfg.runtime.debug)
    try:
        asyncio.run(_run_server(cfg))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


async def _run_server(cfg: Config) -> None:
    server = AdapterServer(cfg)
    results = await server.start()

    failed = [r for r in results if not r.success]
    console.print(
        f"[bold]civic-mcp[/bold] serving [green]{len(server.registry.names())}[/green] tool(s) "
        f"from {len(results) - len(failed)} adapter(s) in {cfg.adapters_path}"
    )
    for result in failed:
        console.print(f"  [yellow]skipped {result.name}:[/yellow] {result.error}")

    await server.run_stdio()
