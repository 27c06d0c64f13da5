"""Configuration system for the civic-mcp runtime.

Loads config.yaml into typed dataclasses. A missing file yields defaults.
Supports environment variable overrides for the settings the server has
always read from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

HUMAN_MODES = ("auto", "store", "terminal", "listener", "unattended")


@dataclass
class RuntimeConfig:
    """Where adapters live and how long page operations may take."""

    adapters_dir: str = "adapters"
    default_timeout_seconds: float = 30.0
    debug: bool = False


@dataclass
class BrowserConfig:
    """Pooled Chromium settings for the server and harness backends."""

    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 800
    launch_args: list[str] = field(
        default_factory=lambda: ["--enable-experimental-web-platform-features"]
    )
    keep_alive: bool = True


@dataclass
class StorageConfig:
    storage_dir: str = "~/.civic-mcp/storage"
    quota_bytes: int = 100 * 1024


@dataclass
class HumanConfig:
    """Human-in-the-loop settings."""

    mode: str = "auto"  # auto | store | terminal | listener | unattended
    timeout_seconds: float = 600.0
    listener_host: str = "127.0.0.1"


@dataclass
class SandboxConfig:
    """Scripted adapter child processes."""

    python_bin: str = ""  # empty = current interpreter
    startup_timeout_seconds: float = 30.0
    call_timeout_seconds: float = 0.0  # 0 = unbounded
    strip_env: bool = True


@dataclass
class Config:
    """Top-level civic-mcp configuration."""

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    human: HumanConfig = field(default_factory=HumanConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    project_root: Path = field(default_factory=Path.cwd)

    @property
    def adapters_path(self) -> Path:
        path = Path(self.runtime.adapters_dir).expanduser()
        return path if path.is_absolute() else self.project_root / path

    @property
    def headed(self) -> bool:
        return not self.browser.headless


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: Config) -> None:
    """Apply CIVIC_MCP_* environment variable overrides."""
    adapters_dir = os.environ.get("CIVIC_MCP_ADAPTERS_DIR")
    if adapters_dir:
        config.runtime.adapters_dir = adapters_dir

    headed = os.environ.get("CIVIC_MCP_HEADED")
    if headed is not None and headed != "":
        config.browser.headless = not _truthy(headed)

    timeout_ms = os.environ.get("CIVIC_MCP_TIMEOUT")
    if timeout_ms:
        try:
            config.runtime.default_timeout_seconds = int(timeout_ms) / 1000
        except ValueError as e:
            raise ValueError(
                f"CIVIC_MCP_TIMEOUT must be milliseconds, got {timeout_ms!r}"
            ) from e


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def load_config(config_path: Path | str | None = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config.yaml. If None, checks CIVIC_MCP_CONFIG
                     env var, then falls back to ./config.yaml.

    Returns:
        Populated Config dataclass.
    """
    if config_path is None:
        env_path = os.environ.get("CIVIC_MCP_CONFIG")
        if env_path:
            config_path = Path(env_path)
        else:
            config_path = Path.cwd() / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        config = Config(project_root=config_path.parent.resolve())
        _apply_env_overrides(config)
        return config

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    runtime_raw = _section(raw, "runtime")
    runtime_config = RuntimeConfig(
        adapters_dir=runtime_raw.get("adapters_dir", "adapters"),
        default_timeout_seconds=float(runtime_raw.get("default_timeout_seconds", 30)),
        debug=bool(runtime_raw.get("debug", False)),
    )

    browser_raw = _section(raw, "browser")
    browser_config = BrowserConfig(
        headless=browser_raw.get("headless", True),
        viewport_width=browser_raw.get("viewport_width", 1280),
        viewport_height=browser_raw.get("viewport_height", 800),
        launch_args=browser_raw.get(
            "launch_args", ["--enable-experimental-web-platform-features"]
        ),
        keep_alive=browser_raw.get("keep_alive", True),
    )

    storage_raw = _section(raw, "storage")
    storage_config = StorageConfig(
        storage_dir=storage_raw.get("storage_dir", "~/.civic-mcp/storage"),
        quota_bytes=int(storage_raw.get("quota_bytes", 100 * 1024)),
    )

    human_raw = _section(raw, "human")
    mode = human_raw.get("mode", "auto")
    if mode not in HUMAN_MODES:
        raise ValueError(f"human.mode must be one of {', '.join(HUMAN_MODES)}, got {mode!r}")
    human_config = HumanConfig(
        mode=mode,
        timeout_seconds=float(human_raw.get("timeout_seconds", 600)),
        listener_host=human_raw.get("listener_host", "127.0.0.1"),
    )

    sandbox_raw = _section(raw, "sandbox")
    sandbox_config = SandboxConfig(
        python_bin=sandbox_raw.get("python_bin", ""),
        startup_timeout_seconds=float(sandbox_raw.get("startup_timeout_seconds", 30)),
        call_timeout_seconds=float(sandbox_raw.get("call_timeout_seconds", 0)),
        strip_env=sandbox_raw.get("strip_env", True),
    )

    config = Config(
        runtime=runtime_config,
        browser=browser_config,
        storage=storage_config,
        human=human_config,
        sandbox=sandbox_config,
        project_root=config_path.parent.resolve(),
    )
    _apply_env_overrides(config)
    return config
