"""Test-harness backend: drive one adapter against a single Playwright page.

``AdapterTestHarness`` is what adapter authors use in their own test
suites::

    async with AdapterTestHarness("adapters/gov.example.benefits") as harness:
        result = await harness.test_tool("check_eligibility", {...})
        assert_tool_success(result, eligible=True)

Headless runs use the unattended human mode, so a manual step raises
``HumanRequiredError`` (skip, not fail). Headed runs prompt on the
terminal instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from sandbox.backends import Backend
from sandbox.backends.playwright_page import PlaywrightPage
from sandbox.browser_pool import BrowserPool
from sandbox.capability import DEFAULT_HUMAN_TIMEOUT, CapabilityContext, build_context
from sandbox.config import SandboxConfig
from sandbox.errors import AdapterLoadError
from sandbox.human import HumanCoordinator, build_coordinator
from sandbox.loader import AdapterLoader, AdapterLoadResult, entry_for
from sandbox.manifest import AdapterManifest
from sandbox.registry import SEPARATOR, ToolRegistry, namespaced_tool_name
from sandbox.storage import MAX_STORAGE_BYTES, MemoryBackend, StorageBackend
from tools.base import ToolResult

logger = logging.getLogger(__name__)

HARNESS_TIMEOUT = 15.0


class HarnessBackend(Backend):
    """Every call shares one page; storage is in memory."""

    def __init__(
        self,
        page: Any,
        human: HumanCoordinator,
        *,
        storage: StorageBackend | None = None,
        default_timeout: float = HARNESS_TIMEOUT,
        human_timeout: float = DEFAULT_HUMAN_TIMEOUT,
        quota_bytes: int = MAX_STORAGE_BYTES,
    ) -> None:
        self._page = page
        self.human = human
        self.storage = storage or MemoryBackend()
        self._default_timeout = default_timeout
        self._human_timeout = human_timeout
        self._quota = quota_bytes
        self._lock = asyncio.Lock()

    @contextlib.asynccontextmanager
    async def session(self, manifest: AdapterManifest) -> AsyncIterator[CapabilityContext]:
        async with self._lock:
            page = PlaywrightPage(
                self._page,
                manifest,
                self.human,
                default_timeout=self._default_timeout,
                human_timeout=self._human_timeout,
            )
            yield build_context(manifest, page, self.storage, quota_bytes=self._quota)


def _env_headed() -> bool:
    return os.environ.get("CIVIC_MCP_HEADED", "") == "1"


class AdapterTestHarness:
    """Load one adapter folder and execute its tools against a page.

    Args:
        adapter_dir: folder holding manifest.json and declarative.json or adapter.py.
        headed: show the browser; defaults to ``CIVIC_MCP_HEADED=1``.
        page: an existing Playwright page to drive instead of launching Chromium.
        human: override the human coordinator (terminal when headed,
            unattended otherwise).
    """

    def __init__(
        self,
        adapter_dir: Path | str,
        *,
        headed: bool | None = None,
        page: Any = None,
        human: HumanCoordinator | None = None,
        timeout: float = HARNESS_TIMEOUT,
        human_timeout: float = DEFAULT_HUMAN_TIMEOUT,
        sandbox: SandboxConfig | None = None,
    ) -> None:
        self._adapter_dir = Path(adapter_dir).resolve()
        self.headed = _env_headed() if headed is None else headed
        self._page = page
        self._human = human or build_coordinator(
            "auto", headed=self.headed, unattended_default="unattended"
        )
        self._timeout = timeout
        self._human_timeout = human_timeout

        self._loader = AdapterLoader(self._adapter_dir.parent, sandbox)
        self._registry = ToolRegistry()
        self._stack = contextlib.AsyncExitStack()
        self._backend: HarnessBackend | None = None
        self._result: AdapterLoadResult | None = None

    @property
    def manifest(self) -> AdapterManifest:
        if self._result is None or self._result.manifest is None:
            raise RuntimeError("Harness not started")
        return self._result.manifest

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def backend(self) -> HarnessBackend:
        if self._backend is None:
            raise RuntimeError("Harness not started")
        return self._backend

    @property
    def page(self) -> Any:
        """The Playwright page, for manual assertions."""
        if self._page is None:
            raise RuntimeError("Harness not started")
        return self._page

    async def start(self) -> None:
        """Load the adapter and open the page. Called lazily by ``test_tool``."""
        if self._backend is not None:
            return

        entry = entry_for(self._adapter_dir)
        if entry is None:
            raise AdapterLoadError(
                f"{self._adapter_dir} has no manifest.json with declarative.json or adapter.py"
            )
        result = await self._loader.load(entry)
        if not result.success:
            raise AdapterLoadError(result.error or f"Failed to load {entry.name}")
        self._result = result
        self._stack.push_async_callback(self._loader.close)
        for tool in result.tools:
            self._registry.register(tool)

        if self._page is None:
            pool = BrowserPool(headless=not self.headed, keep_alive=False)
            self._page = await self._stack.enter_async_context(pool.acquire())

        self._backend = HarnessBackend(
            self._page,
            self._human,
            default_timeout=self._timeout,
            human_timeout=self._human_timeout,
        )
        await self._loader.initialize(result, self._backend)

    async def test_tool(self, tool_name: str, params: dict[str, Any] | None = None) -> ToolResult:
        """Execute a tool by its own name (or namespaced name) and return the result."""
        await self.start()
        name = (
            tool_name
            if SEPARATOR in tool_name
            else namespaced_tool_name(self.manifest.id, tool_name)
        )
        return await self._registry.dispatch(name, params or {}, self.backend)

    async def close(self) -> None:
        """Stop the adapter process and close the browser."""
        await self._stack.aclose()
        self._backend = None

    async def __aenter__(self) -> AdapterTestHarness:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
