"""Declarative tool interpreter.

A declarative tool is pure data: where to go, which selectors to fill,
what to click, and which selectors to read back. ``run_declarative``
drives the capability API through five fixed stages and never evaluates
adapter-supplied code.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

from sandbox.capability import CapabilityContext
from sandbox.errors import (
    AdapterLoadError,
    AdapterRuntimeError,
    HumanRequiredError,
    SelectorNotFoundError,
)
from sandbox.utils import parse_amount
from tools.base import ToolResult

logger = logging.getLogger(__name__)

INPUT_TYPES = frozenset({"text", "number", "boolean", "select", "date", "email", "tel"})
OUTPUT_TYPES = frozenset({"text", "number", "boolean", "html", "url", "date"})

_AFFIRMATIVE_RE = re.compile(r"yes|true|eligible|approved", re.IGNORECASE)
_NEGATIVE_RE = re.compile(
    r"\b(?:not\s+(?:eligible|approved|qualified)|ineligible|denied|rejected)\b"
    r"|^\s*(?:no|false)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SelectOption:
    label: str
    value: str


@dataclass(frozen=True)
class NavigationDef:
    url: str
    wait_for_selector: str | None = None
    click_first: str | None = None


@dataclass(frozen=True)
class InputDef:
    selector: str
    type: str = "text"
    options: tuple[SelectOption, ...] = ()
    required: bool = True
    description: str | None = None
    default: Any = None


@dataclass(frozen=True)
class SubmitDef:
    selector: str
    wait_for_selector: str | None = None
    wait_for_navigation: bool = False


@dataclass(frozen=True)
class OutputDef:
    selector: str
    type: str = "text"
    attribute: str | None = None
    optional: bool = False


@dataclass(frozen=True)
class DeclarativeToolSpec:
    name: str
    description: str
    navigation: NavigationDef
    submit: SubmitDef
    inputs: dict[str, InputDef] = field(default_factory=dict)
    output: dict[str, OutputDef] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _selector(raw: Any, where: str) -> str:
    if not isinstance(raw, dict):
        raise AdapterLoadError(f"{where}: definition must be an object")
    selector = raw.get("selector")
    if not isinstance(selector, str) or not selector.strip():
        raise AdapterLoadError(f"{where}: missing selector")
    return selector


def _parse_tool(raw: Any) -> DeclarativeToolSpec:
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        raise AdapterLoadError("Declarative tool must be an object with a name")
    name = raw["name"]

    nav = raw.get("navigation")
    if not isinstance(nav, dict) or not isinstance(nav.get("url"), str):
        raise AdapterLoadError(f'Tool "{name}": navigation.url is required')

    inputs: dict[str, InputDef] = {}
    for param, d in (raw.get("inputs") or {}).items():
        sel = _selector(d, f'Tool "{name}" input "{param}"')
        input_type = d.get("type", "text")
        if input_type not in INPUT_TYPES:
            raise AdapterLoadError(f'Tool "{name}" input "{param}": unknown type "{input_type}"')
        inputs[param] = InputDef(
            selector=sel,
            type=input_type,
            options=tuple(
                SelectOption(label=str(o.get("label", o.get("value"))), value=str(o["value"]))
                for o in d.get("options") or []
                if isinstance(o, dict) and "value" in o
            ),
            required=d.get("required") is not False,
            description=d.get("description"),
            default=d.get("default"),
        )

    submit_raw = raw.get("submit")
    submit = SubmitDef(
        selector=_selector(submit_raw, f'Tool "{name}" submit'),
        wait_for_selector=submit_raw.get("waitForSelector"),
        wait_for_navigation=bool(submit_raw.get("waitForNavigation", False)),
    )

    output: dict[str, OutputDef] = {}
    for key, d in (raw.get("output") or {}).items():
        sel = _selector(d, f'Tool "{name}" output "{key}"')
        output_type = d.get("type", "text")
        if output_type not in OUTPUT_TYPES:
            raise AdapterLoadError(f'Tool "{name}" output "{key}": unknown type "{output_type}"')
        output[key] = OutputDef(
            selector=sel,
            type=output_type,
            attribute=d.get("attribute"),
            optional=bool(d.get("optional", False)),
        )

    return DeclarativeToolSpec(
        name=name,
        description=raw.get("description", ""),
        navigation=NavigationDef(
            url=nav["url"],
            wait_for_selector=nav.get("waitForSelector"),
            click_first=nav.get("clickFirst"),
        ),
        submit=submit,
        inputs=inputs,
        output=output,
    )


def parse_declarative_config(data: Any) -> list[DeclarativeToolSpec]:
    """Parse ``declarative.json`` content into tool specs.

    Raises:
        AdapterLoadError: on structural problems (missing selectors etc).
    """
    if not isinstance(data, dict) or not isinstance(data.get("tools"), list):
        raise AdapterLoadError('declarative.json must contain a "tools" list')
    return [_parse_tool(t) for t in data["tools"]]


def input_schema_for(spec: DeclarativeToolSpec) -> dict[str, Any]:
    """Derive the tool's JSON input schema from its input map."""
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param, d in spec.inputs.items():
        json_type = {"boolean": "boolean", "number": "number"}.get(d.type, "string")
        prop: dict[str, Any] = {
            "type": json_type,
            "description": d.description or f"Value for {param}",
        }
        if d.options:
            prop["enum"] = [o.value for o in d.options]
        if d.default is not None:
            prop["default"] = d.default
        properties[param] = prop
        if d.required and d.default is None:
            required.append(param)
    return {"type": "object", "properties": properties, "required": required}


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def format_input(value: Any) -> str:
    """Render a parameter the way a browser form would receive it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value)


def coerce_output(raw: str | None, output_type: str) -> Any:
    if raw is None:
        return None
    if output_type == "number":
        return parse_amount(raw)
    if output_type == "boolean":
        if _NEGATIVE_RE.search(raw):
            return False
        return bool(_AFFIRMATIVE_RE.search(raw))
    return raw


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def _fill_input(ctx: CapabilityContext, d: InputDef, value: Any) -> None:
    text = format_input(value)
    if d.type == "select":
        by_text = any(o.label == text for o in d.options) and not any(
            o.value == text for o in d.options
        )
        await ctx.page.select_option(d.selector, text, by_text=by_text)
    else:
        await ctx.page.fill_field(d.selector, text)


async def _read_output(ctx: CapabilityContext, d: OutputDef) -> str | None:
    if d.attribute:
        return await ctx.page.get_attribute(d.selector, d.attribute)
    text = await ctx.page.get_text(d.selector)
    return text.strip() if text is not None else None


async def run_declarative(
    spec: DeclarativeToolSpec, params: dict[str, Any], ctx: CapabilityContext
) -> ToolResult:
    """Execute ``spec`` with ``params``.

    Failures come back as a result; only ``HumanRequiredError`` escapes.
    """
    try:
        nav = spec.navigation
        await ctx.page.navigate(nav.url, ready_selector=nav.wait_for_selector)
        if nav.click_first:
            await ctx.page.click(nav.click_first)

        for param, d in spec.inputs.items():
            value = params.get(param)
            if value is None:
                value = d.default
            if value is None:
                continue
            await _fill_input(ctx, d, value)

        await ctx.page.click(
            spec.submit.selector, wait_for_navigation=spec.submit.wait_for_navigation
        )
        if spec.submit.wait_for_selector:
            await ctx.page.wait_for_selector(spec.submit.wait_for_selector)

        output: dict[str, Any] = {}
        for key, d in spec.output.items():
            if not await ctx.page.exists(d.selector):
                if not d.optional:
                    raise SelectorNotFoundError(f'Output selector not found: "{d.selector}"')
                output[key] = None
                continue
            output[key] = coerce_output(await _read_output(ctx, d), d.type)

        return ToolResult.ok(output)
    except AdapterRuntimeError as e:
        logger.info("Declarative tool %s failed [%s]: %s", spec.name, e.code, e)
        return ToolResult.fail(str(e), e.code)
    except HumanRequiredError:
        raise
    except Exception as e:
        logger.exception("Declarative tool %s crashed", spec.name)
        return ToolResult.fail(str(e) or type(e).__name__)
