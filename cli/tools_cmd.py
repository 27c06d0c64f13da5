"""civic-mcp tools: List the namespaced tools the server would expose."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from cli.serve_cmd import load_cli_config
from sandbox.config import Config
from sandbox.loader import AdapterLoader, AdapterLoadResult
from sandbox.log_setup import setup_logging
from sandbox.registry import ToolRegistry

console = Console()


async def _collect(cfg: Config) -> tuple[ToolRegistry, list[AdapterLoadResult]]:
    loader = AdapterLoader(cfg.adapters_path, cfg.sandbox, denied_paths=[cfg.storage.storage_dir])
    registry = ToolRegistry()
    try:
        results = await loader.load_all()
        for result in results:
            for tool in result.tools:
                registry.register(tool)
    finally:
        await loader.close()
    return registry, results


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(),
    default=None,
    help="Path to config.yaml",
)
@click.option("--adapters-dir", type=click.Path(), default=None, help="Adapters directory")
def tools_cmd(config_path: str | None, adapters_dir: str | None) -> None:
    """Show every adapter tool with its namespaced name."""
    cfg = load_cli_config(config_path, adapters_dir)
    setup_logging(stderr_only=True)
    registry, results = asyncio.run(_collect(cfg))

    summaries = registry.list_tool_summaries()
    if not summaries:
        console.print(f"[dim]No adapter tools found in {cfg.adapters_path}.[/dim]")
    else:
        table = Table(title=f"Adapter tools ({len(summaries)})")
        table.add_column("Tool", style="cyan")
        table.add_column("Adapter")
        table.add_column("Security")
        table.add_column("Trust", style="dim")
        table.add_column("Description")
        for s in summaries:
            security = s["security"]
            color = "yellow" if security == "write" else "green"
            table.add_row(
                s["name"],
                s["adapter"],
                f"[{color}]{security}[/{color}]",
                s["trust"],
                s["description"],
            )
        console.print(table)

    for result in results:
        if not result.success:
            console.print(f"[red]Failed to load {result.name}:[/red] {result.error}")
