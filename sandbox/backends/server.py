"""Standalone server backend: adapters exposed as MCP tools over stdio.

One pooled Chromium instance is shared by all calls; every call gets its
own fresh browser context, so calls to different adapters (or repeated
calls to the same one) may run concurrently. Storage persists as one JSON
file per adapter. Human steps go to the terminal when the browser is
headed and to a throwaway local listener otherwise.
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from sandbox import __version__
from sandbox.backends import Backend
from sandbox.backends.playwright_page import PlaywrightPage
from sandbox.browser_pool import BrowserPool
from sandbox.capability import DEFAULT_HUMAN_TIMEOUT, DEFAULT_TIMEOUT, CapabilityContext, build_context
from sandbox.config import Config
from sandbox.human import HumanCoordinator, build_coordinator
from sandbox.loader import AdapterLoader, AdapterLoadResult
from sandbox.manifest import AdapterManifest
from sandbox.registry import ToolRegistry
from sandbox.storage import MAX_STORAGE_BYTES, JsonFileBackend, StorageBackend
from tools.base import ToolResult

logger = logging.getLogger(__name__)

SERVER_NAME = "civic-mcp"


class ServerBackend(Backend):
    """Fresh browser context per call from a shared ``BrowserPool``."""

    def __init__(
        self,
        pool: BrowserPool,
        storage: StorageBackend,
        human: HumanCoordinator,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        human_timeout: float = DEFAULT_HUMAN_TIMEOUT,
        quota_bytes: int = MAX_STORAGE_BYTES,
    ) -> None:
        self.pool = pool
        self.storage = storage
        self.human = human
        self._default_timeout = default_timeout
        self._human_timeout = human_timeout
        self._quota = quota_bytes

    @contextlib.asynccontextmanager
    async def session(self, manifest: AdapterManifest) -> AsyncIterator[CapabilityContext]:
        async with self.pool.acquire() as raw_page:
            page = PlaywrightPage(
                raw_page,
                manifest,
                self.human,
                default_timeout=self._default_timeout,
                human_timeout=self._human_timeout,
            )
            yield build_context(manifest, page, self.storage, quota_bytes=self._quota)

    async def close(self) -> None:
        await self.pool.shutdown()


def _backend_from_config(config: Config) -> ServerBackend:
    pool = BrowserPool(
        headless=config.browser.headless,
        viewport={
            "width": config.browser.viewport_width,
            "height": config.browser.viewport_height,
        },
        launch_args=config.browser.launch_args,
        keep_alive=config.browser.keep_alive,
    )
    human = build_coordinator(
        config.human.mode,
        headed=config.headed,
        unattended_default="listener",
        listener_host=config.human.listener_host,
    )
    return ServerBackend(
        pool,
        JsonFileBackend(config.storage.storage_dir),
        human,
        default_timeout=config.runtime.default_timeout_seconds,
        human_timeout=config.human.timeout_seconds,
        quota_bytes=config.storage.quota_bytes,
    )


class AdapterServer:
    """Loads every adapter under the configured directory and serves its tools."""

    def __init__(self, config: Config, backend: Backend | None = None) -> None:
        self._config = config
        self.backend = backend or _backend_from_config(config)
        self.loader = AdapterLoader(
            config.adapters_path, config.sandbox, denied_paths=[config.storage.storage_dir]
        )
        self.registry = ToolRegistry()
        self.results: list[AdapterLoadResult] = []
        self._started = False

    async def start(self) -> list[AdapterLoadResult]:
        """Load, register and initialize all adapters. Idempotent."""
        if self._started:
            return self.results
        self._started = True

        logger.info("Loading adapters from %s", self._config.adapters_path)
        self.results = await self.loader.load_all()
        for result in self.results:
            if not result.success:
                continue
            for tool in result.tools:
                self.registry.register(tool)
            await self.loader.initialize(result, self.backend)

        loaded = sum(1 for r in self.results if r.success)
        logger.info(
            "%d adapter(s) loaded, %d tool(s) registered", loaded, len(self.registry.names())
        )
        return self.results

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Dispatch one namespaced tool call.

        ``HumanRequiredError`` propagates (only possible in unattended mode).
        """
        await self.start()
        return await self.registry.dispatch(name, arguments, self.backend)

    def build_mcp_server(self) -> Server:
        """An MCP server answering ``tools/list`` and ``tools/call``."""
        server: Server = Server(SERVER_NAME, version=__version__)

        @server.list_tools()
        async def list_tools() -> list[types.Tool]:
            return [
                types.Tool(
                    name=entry["name"],
                    description=entry["description"],
                    inputSchema=entry["inputSchema"],
                )
                for entry in self.registry.list_tools()
            ]

        # Arguments are validated by dispatch so failures come back tagged.
        @server.call_tool(validate_input=False)
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
            result = await self.call_tool(name, arguments)
            payload = json.dumps(result.to_dict(), ensure_ascii=False)
            if not result.success:
                # The SDK turns a raised error into an isError result.
                raise RuntimeError(payload)
            return [types.TextContent(type="text", text=payload)]

        return server

    async def run_stdio(self) -> None:
        """Serve MCP over stdin/stdout until the client disconnects."""
        await self.start()
        server = self.build_mcp_server()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(read_stream, write_stream, server.create_initialization_options())
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop adapter processes, then close the browser pool."""
        await self.loader.close()
        await self.backend.close()
