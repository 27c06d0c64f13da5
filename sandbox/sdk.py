"""Authoring types for scripted adapters.

An ``adapter.py`` exposes a module-level ``adapter``::

    from sandbox.sdk import Adapter, Tool, failure, success

    async def check(params, context):
        await context.page.navigate("https://example.gov/check")
        ...
        return success(eligible=True)

    adapter = Adapter(
        id="gov.example.check",
        tools=[Tool(name="check", description="...", execute=check)],
    )

The ``context`` handed to ``init`` and ``execute`` exposes exactly the
capability surfaces (``page``, ``storage``, ``notify``, ``utils``).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sandbox.errors import ErrorCode

ExecuteFn = Callable[[dict[str, Any], Any], Awaitable[dict[str, Any]]]
InitFn = Callable[[Any], Awaitable[None]]


def _empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass
class Tool:
    name: str
    description: str
    execute: ExecuteFn
    input_schema: dict[str, Any] = field(default_factory=_empty_schema)


@dataclass
class Adapter:
    id: str
    tools: list[Tool]
    init: InitFn | None = None


def success(**data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def failure(error: str, code: ErrorCode | str = ErrorCode.UNKNOWN) -> dict[str, Any]:
    return {"success": False, "error": error, "code": str(code)}
