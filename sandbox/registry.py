"""Tool registry: namespaces adapter tools and dispatches calls.

Every tool is exposed as ``<adapter id>__<tool name>``. Adapter ids are
reverse-DNS strings that never contain ``_``; tool names are identifiers
that never contain ``__``. The first ``__`` in a namespaced name therefore
always separates the two halves.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from sandbox.errors import ErrorCode, HumanRequiredError, UnknownToolError
from tools.base import BaseTool, ToolResult

if TYPE_CHECKING:
    from sandbox.backends import Backend

logger = logging.getLogger(__name__)

SEPARATOR = "__"

_ADAPTER_ID_RE = re.compile(r"^[A-Za-z0-9]+(?:[.\-][A-Za-z0-9]+)*$")
_TOOL_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*(?:_[A-Za-z0-9]+)*$")


def namespaced_tool_name(adapter_id: str, tool_name: str) -> str:
    """Join ``adapter_id`` and ``tool_name`` into the exposed tool name.

    Raises:
        ValueError: if either half could contain the separator.
    """
    if not _ADAPTER_ID_RE.match(adapter_id):
        raise ValueError(f"Invalid adapter id for namespacing: {adapter_id!r}")
    if not _TOOL_NAME_RE.match(tool_name):
        raise ValueError(f"Invalid tool name for namespacing: {tool_name!r}")
    return f"{adapter_id}{SEPARATOR}{tool_name}"


def split_tool_name(name: str) -> tuple[str, str]:
    """Inverse of ``namespaced_tool_name``."""
    adapter_id, sep, tool_name = name.partition(SEPARATOR)
    if not sep or not adapter_id or not tool_name:
        raise ValueError(f"Not a namespaced tool name: {name!r}")
    return adapter_id, tool_name


class ToolRegistry:
    """Central registry for all adapter tools of one runtime session."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> str | None:
        """Register a tool under its namespaced name.

        Returns the name, or None if the tool was rejected (invalid name or
        the name is already taken; the first registration wins).
        """
        try:
            name = namespaced_tool_name(tool.manifest.id, tool.name)
        except ValueError as e:
            logger.warning("Not registering tool: %s", e)
            return None
        if name in self._tools:
            logger.warning("Duplicate tool name %s ignored", name)
            return None
        self._tools[name] = tool
        return name

    def unregister_adapter(self, adapter_id: str) -> int:
        """Remove every tool of ``adapter_id``. Returns how many were removed."""
        prefix = f"{adapter_id}{SEPARATOR}"
        doomed = [n for n in self._tools if n.startswith(prefix)]
        for name in doomed:
            del self._tools[name]
        return len(doomed)

    def get(self, name: str) -> BaseTool | None:
        """Look up a tool by namespaced name."""
        return self._tools.get(name)

    def resolve(self, name: str) -> BaseTool:
        """Look up a tool, failing closed with the list of known names."""
        tool = self._tools.get(name)
        if tool is None:
            known = ", ".join(sorted(self._tools)) or "(none)"
            raise UnknownToolError(f'Unknown tool "{name}". Available: {known}')
        return tool

    def names(self) -> list[str]:
        return sorted(self._tools)

    def all_tools(self) -> list[BaseTool]:
        """Return all registered tool instances."""
        return list(self._tools.values())

    def list_tools(self) -> list[dict[str, Any]]:
        """Return tool schemas in MCP ``tools/list`` format."""
        return [tool.to_mcp_schema(name) for name, tool in sorted(self._tools.items())]

    def list_tool_summaries(self) -> list[dict[str, str]]:
        """Return human-readable tool summaries."""
        return [
            {
                "name": name,
                "adapter": t.manifest.name,
                "description": t.description,
                "security": t.security_level.value,
                "trust": t.manifest.trust_level.value,
            }
            for name, t in sorted(self._tools.items())
        ]

    async def dispatch(
        self, name: str, params: dict[str, Any] | None, backend: Backend
    ) -> ToolResult:
        """Resolve, validate and run one namespaced tool call.

        Arguments are validated against the tool's schema before a
        capability context is opened, so a bad argument never touches a
        page. Every failure comes back as a result except
        ``HumanRequiredError``, which propagates.
        """
        try:
            tool = self.resolve(name)
        except UnknownToolError as e:
            return ToolResult.fail(str(e), e.code)

        params = params if params is not None else {}
        errors = tool.validate_input(params)
        if errors:
            return ToolResult.fail(
                "Invalid arguments: " + "; ".join(errors), ErrorCode.VALIDATION_ERROR
            )

        logger.info("Calling %s", name)
        try:
            async with backend.session(tool.manifest) as context:
                result = await tool.execute(params, context)
        except HumanRequiredError:
            raise
        except Exception as e:
            logger.exception("Tool %s failed outside its handler", name)
            return ToolResult.from_exception(e)

        if result.success:
            logger.info("%s succeeded", name)
        else:
            logger.info("%s failed [%s]: %s", name, result.code, result.error)
        return result
