"""civic-mcp call: Run one tool through the server backend and print the result.

Usage:
    civic-mcp call gov.example.benefits__check_eligibility \\
        --params '{"household_size": 3, "monthly_income": 2500}'

Exit status is 0 on success, 1 on a failed result and 2 when the tool
needs a human but none is available.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from rich.console import Console

from cli.serve_cmd import load_cli_config
from sandbox.backends.server import AdapterServer
from sandbox.config import Config
from sandbox.errors import HumanRequiredError
from sandbox.log_setup import setup_logging
from tools.base import ToolResult

console = Console()
err_console = Console(stderr=True)


def _parse_params(raw: str) -> dict[str, Any]:
    try:
        params = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--params") from e
    if not isinstance(params, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--params")
    return params


async def _call(cfg: Config, name: str, params: dict[str, Any]) -> ToolResult:
    server = AdapterServer(cfg)
    try:
        return await server.call_tool(name, params)
    finally:
        await server.close()


@click.command()
@click.argument("name")
@click.option("--params", "raw_params", default="{}", help="Tool arguments as a JSON object")
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
def call_cmd(
    name: str,
    raw_params: str,
    config_path: str | None,
    adapters_dir: str | None,
    headed: bool,
    debug: bool,
) -> None:
    """Call the namespaced tool NAME once."""
    params = _parse_params(raw_params)
    cfg = load_cli_config(config_path, adapters_dir, headed)
    setup_logging(debug=debug, stderr_only=True)

    try:
        result = asyncio.run(_call(cfg, name, params))
    except HumanRequiredError as e:
        err_console.print(f"[yellow]Skipped:[/yellow] {e}")
        raise SystemExit(2) from e

    console.print_json(json.dumps(result.to_dict(), ensure_ascii=False))
    if not result.success:
        raise SystemExit(1)
