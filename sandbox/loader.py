"""Adapter discovery and loading.

Scans the adapters directory for adapter folders, parses each
``manifest.json``, and turns the adapter into tool instances:

- ``declarative.json`` -> one ``DeclarativeTool`` per recipe (no code runs)
- ``adapter.py``       -> an isolated ``AdapterProcess`` plus one
                          ``ScriptedTool`` per exported tool

Load failures are reported per adapter and never abort the others.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sandbox.errors import AdapterLoadError
from sandbox.interpreter import parse_declarative_config
from sandbox.isolation import AdapterProcess
from sandbox.manifest import AdapterManifest, load_manifest
from tools.base import BaseTool
from tools.declarative import DeclarativeTool
from tools.scripted import ScriptedTool

if TYPE_CHECKING:
    from sandbox.backends import Backend
    from sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

DECLARATIVE_FILE = "declarative.json"
SCRIPT_FILE = "adapter.py"
MANIFEST_FILE = "manifest.json"


@dataclass
class AdapterEntry:
    """A discovered adapter folder."""

    directory: Path
    kind: str  # declarative | scripted

    @property
    def name(self) -> str:
        return self.directory.name

    @property
    def manifest_path(self) -> Path:
        return self.directory / MANIFEST_FILE

    @property
    def source_path(self) -> Path:
        return self.directory / (DECLARATIVE_FILE if self.kind == "declarative" else SCRIPT_FILE)


@dataclass
class AdapterLoadResult:
    """Result of attempting to load a single adapter."""

    name: str
    success: bool
    error: str | None = None
    manifest: AdapterManifest | None = None
    tools: list[BaseTool] = field(default_factory=list)
    process: AdapterProcess | None = None


def entry_for(directory: Path) -> AdapterEntry | None:
    """Classify one folder, or None if it holds no loadable adapter."""
    if not (directory / MANIFEST_FILE).exists():
        return None
    if (directory / DECLARATIVE_FILE).exists():
        return AdapterEntry(directory=directory, kind="declarative")
    if (directory / SCRIPT_FILE).exists():
        return AdapterEntry(directory=directory, kind="scripted")
    return None


class AdapterLoader:
    """Discovers and loads adapters from the adapters directory."""

    def __init__(
        self,
        adapters_dir: Path,
        sandbox: SandboxConfig | None = None,
        *,
        denied_paths: Iterable[str | Path] = (),
    ) -> None:
        self._adapters_dir = adapters_dir
        self._sandbox = sandbox
        self._denied_paths = list(denied_paths)
        self._processes: dict[str, AdapterProcess] = {}

    def discover(self) -> list[AdapterEntry]:
        """Scan for folders with manifest.json plus declarative.json or adapter.py.

        Skips directories starting with '_' or '.'.
        """
        if not self._adapters_dir.exists():
            logger.warning("Adapters directory not found: %s", self._adapters_dir)
            return []

        entries: list[AdapterEntry] = []
        for child in sorted(self._adapters_dir.iterdir()):
            if not child.is_dir():
                continue
            if child.name.startswith("_") or child.name.startswith("."):
                continue
            entry = entry_for(child)
            if entry is None:
                logger.debug("Skipping %s: missing manifest.json or adapter source", child.name)
                continue
            entries.append(entry)
        return entries

    async def load(self, entry: AdapterEntry) -> AdapterLoadResult:
        """Parse the manifest and build the adapter's tools."""
        try:
            manifest = load_manifest(entry.manifest_path)
            if entry.kind == "declarative":
                tools = self._load_declarative(entry, manifest)
                process = None
            else:
                process, tools = await self._load_scripted(entry, manifest)
        except AdapterLoadError as e:
            return AdapterLoadResult(name=entry.name, success=False, error=str(e))
        except Exception as e:
            return AdapterLoadResult(name=entry.name, success=False, error=f"Failed to load: {e}")

        for tool in tools:
            if manifest.tools and manifest.summary_for(tool.name) is None:
                logger.warning(
                    'Adapter "%s" exports tool "%s" not declared in its manifest',
                    manifest.id,
                    tool.name,
                )
        return AdapterLoadResult(
            name=entry.name, success=True, manifest=manifest, tools=tools, process=process
        )

    def _load_declarative(self, entry: AdapterEntry, manifest: AdapterManifest) -> list[BaseTool]:
        try:
            with open(entry.source_path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise AdapterLoadError(f"Cannot read {entry.source_path.name}: {e}") from e
        config_id = data.get("id") if isinstance(data, dict) else None
        if config_id and config_id != manifest.id:
            raise AdapterLoadError(
                f'{DECLARATIVE_FILE} id "{config_id}" does not match manifest id "{manifest.id}"'
            )
        return [DeclarativeTool(manifest, spec) for spec in parse_declarative_config(data)]

    async def _load_scripted(
        self, entry: AdapterEntry, manifest: AdapterManifest
    ) -> tuple[AdapterProcess, list[BaseTool]]:
        if manifest.declarative:
            raise AdapterLoadError(
                f'Adapter "{manifest.id}" is declared declarative but ships {SCRIPT_FILE}'
            )
        sb = self._sandbox
        process = AdapterProcess(
            entry.source_path,
            python_bin=(sb.python_bin or None) if sb else None,
            startup_timeout=sb.startup_timeout_seconds if sb else 30.0,
            call_timeout=(sb.call_timeout_seconds or None) if sb else None,
            strip_env=sb.strip_env if sb else True,
            denied_paths=self._denied_paths,
        )
        await process.start()
        if process.adapter_id != manifest.id:
            await process.stop()
            raise AdapterLoadError(
                f'{SCRIPT_FILE} id "{process.adapter_id}" does not match manifest id "{manifest.id}"'
            )
        self._processes[manifest.id] = process
        return process, [ScriptedTool(manifest, process, info) for info in process.tools]

    async def load_all(self) -> list[AdapterLoadResult]:
        """Discover and load all adapters."""
        results: list[AdapterLoadResult] = []
        for entry in self.discover():
            result = await self.load(entry)
            if result.success:
                logger.info("Loaded adapter %s (%d tools)", entry.name, len(result.tools))
            else:
                logger.warning("Failed to load adapter %s: %s", entry.name, result.error)
            results.append(result)
        return results

    async def initialize(self, result: AdapterLoadResult, backend: Backend) -> bool:
        """Run a scripted adapter's one-time ``init(context)``.

        Failures are logged; the adapter stays registered.
        """
        process, manifest = result.process, result.manifest
        if process is None or manifest is None or not process.has_init:
            return True
        try:
            async with backend.session(manifest) as context:
                await process.init(context)
        except Exception as e:
            logger.warning("init() failed for adapter %s: %s", manifest.id, e)
            return False
        return True

    async def close(self) -> None:
        """Stop every adapter process started by this loader."""
        for process in self._processes.values():
            await process.stop()
        self._processes.clear()
