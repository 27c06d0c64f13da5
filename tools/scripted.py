"""Scripted tool: adapter-authored code running in an isolated process."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sandbox.errors import AdapterRuntimeError, HumanRequiredError
from tools.base import BaseTool, ToolResult

if TYPE_CHECKING:
    from sandbox.capability import CapabilityContext
    from sandbox.isolation import AdapterProcess
    from sandbox.manifest import AdapterManifest

logger = logging.getLogger(__name__)


class ScriptedTool(BaseTool):
    """Proxy for one tool exported by an ``AdapterProcess``.

    The tool's name, description and schema come from the child's ready
    message; execution is forwarded over the isolation boundary.
    """

    def __init__(
        self,
        manifest: AdapterManifest,
        process: AdapterProcess,
        info: dict[str, Any],
    ) -> None:
        super().__init__(manifest)
        self._process = process
        self._name: str = info["name"]
        self._description: str = info.get("description", "")
        self._input_schema: dict[str, Any] = info.get("input_schema") or {
            "type": "object",
            "properties": {},
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._input_schema

    async def execute(self, params: dict[str, Any], context: CapabilityContext) -> ToolResult:
        try:
            raw = await self._process.execute(self._name, params, context)
        except HumanRequiredError:
            raise
        except AdapterRuntimeError as e:
            logger.info("Scripted tool %s failed [%s]: %s", self._name, e.code, e)
            return ToolResult.fail(str(e), e.code)
        except Exception as e:
            logger.exception("Scripted tool %s crashed", self._name)
            return ToolResult.fail(str(e) or type(e).__name__)
        return ToolResult.from_dict(raw)
