"""Declarative tool: a JSON automation recipe run by the interpreter."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sandbox.interpreter import DeclarativeToolSpec, input_schema_for, run_declarative
from tools.base import BaseTool, ToolResult

if TYPE_CHECKING:
    from sandbox.capability import CapabilityContext
    from sandbox.manifest import AdapterManifest


class DeclarativeTool(BaseTool):
    """Wraps one ``DeclarativeToolSpec`` from an adapter's declarative.json."""

    def __init__(self, manifest: AdapterManifest, spec: DeclarativeToolSpec) -> None:
        super().__init__(manifest)
        self._spec = spec
        self._schema = input_schema_for(spec)

    @property
    def spec(self) -> DeclarativeToolSpec:
        return self._spec

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def description(self) -> str:
        return self._spec.description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._schema

    async def execute(self, params: dict[str, Any], context: CapabilityContext) -> ToolResult:
        return await run_declarative(self._spec, params, context)
