"""Tool base class and the tagged result every tool invocation returns.

Every adapter tool, declarative recipe or scripted handler, is wrapped
in a BaseTool subclass bound to its adapter's manifest.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sandbox.errors import ErrorCode, HumanRequiredError, error_code_for
from sandbox.schema import validate_params

if TYPE_CHECKING:
    from sandbox.capability import CapabilityContext
    from sandbox.manifest import AdapterManifest


class SecurityLevel(StrEnum):
    READ_ONLY = "read_only"
    WRITE = "write"


@dataclass
class ToolResult:
    """Standardized result from tool execution.

    Either ``{"success": true, "data": {...}}`` or
    ``{"success": false, "error": "...", "code": "<ErrorCode>"}``.
    """

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    code: ErrorCode | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> ToolResult:
        return cls(success=True, data=dict(data or {}))

    @classmethod
    def fail(cls, error: str, code: ErrorCode | str = ErrorCode.UNKNOWN) -> ToolResult:
        try:
            code = ErrorCode(code)
        except ValueError:
            code = ErrorCode.UNKNOWN
        return cls(success=False, error=error, code=code)

    @classmethod
    def from_exception(cls, exc: BaseException) -> ToolResult:
        """Downgrade an exception to a failure result.

        ``HumanRequiredError`` is never downgraded; callers let it propagate.
        """
        if isinstance(exc, HumanRequiredError):
            raise exc
        return cls.fail(str(exc) or type(exc).__name__, error_code_for(exc))

    @classmethod
    def from_dict(cls, raw: Any) -> ToolResult:
        """Normalise a result returned by adapter code."""
        if isinstance(raw, ToolResult):
            return raw
        if not isinstance(raw, dict) or not isinstance(raw.get("success"), bool):
            return cls.fail("Adapter returned a malformed result", ErrorCode.UNKNOWN)
        if raw["success"]:
            data = raw.get("data")
            return cls.ok(data if isinstance(data, dict) else {})
        return cls.fail(str(raw.get("error") or "Unknown error"), raw.get("code") or ErrorCode.UNKNOWN)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {
            "success": False,
            "error": self.error or "Unknown error",
            "code": str(self.code or ErrorCode.UNKNOWN),
        }


class BaseTool(abc.ABC):
    """Abstract base class for adapter tools."""

    def __init__(self, manifest: AdapterManifest) -> None:
        self.manifest = manifest

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """The tool's own name, unique within its adapter."""
        ...

    @property
    @abc.abstractmethod
    def description(self) -> str:
        """Natural language description for agent tool selection."""
        ...

    @property
    @abc.abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema for input parameters."""
        ...

    @property
    def security_level(self) -> SecurityLevel:
        """Read-only vs mutating, as declared in the manifest."""
        summary = self.manifest.summary_for(self.name)
        if summary is not None and summary.security_level == SecurityLevel.WRITE:
            return SecurityLevel.WRITE
        return SecurityLevel.READ_ONLY

    @abc.abstractmethod
    async def execute(self, params: dict[str, Any], context: CapabilityContext) -> ToolResult:
        """Execute the tool with validated parameters against ``context``."""
        ...

    def validate_input(self, params: dict[str, Any]) -> list[str]:
        """Validate input against schema. Returns list of errors (empty = valid)."""
        return validate_params(self.input_schema, params)

    def to_mcp_schema(self, qualified_name: str) -> dict[str, Any]:
        """Return the MCP ``tools/list`` entry for this tool."""
        return {
            "name": qualified_name,
            "description": f"[{self.manifest.name}] {self.description}",
            "inputSchema": self.input_schema,
        }
