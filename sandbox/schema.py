"""Validation of tool call arguments against a tool's declared input schema.

Covers the JSON Schema subset adapters may declare: the six basic types,
``enum``, numeric bounds, string length, ``pattern``, and nested
``items``/``properties``/``required``.
"""

from __future__ import annotations

import re
from typing import Any

_TYPE_MAP: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def validate_params(schema: dict[str, Any], params: Any) -> list[str]:
    """Validate ``params`` against ``schema``. Returns a list of errors (empty = valid)."""
    if not isinstance(params, dict):
        return ["Arguments must be a JSON object"]
    errors: list[str] = []
    _validate_object(schema, params, "", errors)
    return errors


def _validate_object(
    schema: dict[str, Any], value: dict[str, Any], path: str, errors: list[str]
) -> None:
    properties = schema.get("properties", {})
    for req_field in schema.get("required", []):
        if value.get(req_field) is None:
            errors.append(f"Missing required field: {path}{req_field}")

    for name, item in value.items():
        if name in properties and item is not None:
            _validate_value(properties[name], item, f"{path}{name}", errors)


def _validate_value(prop: dict[str, Any], value: Any, path: str, errors: list[str]) -> None:
    expected = prop.get("type")
    if expected and not check_type(value, expected):
        errors.append(
            f"Field '{path}' expected type '{expected}', got '{type(value).__name__}'"
        )
        return

    if "enum" in prop and value not in prop["enum"]:
        allowed = ", ".join(repr(v) for v in prop["enum"])
        errors.append(f"Field '{path}' must be one of: {allowed}")

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if "minimum" in prop and value < prop["minimum"]:
            errors.append(f"Field '{path}' must be >= {prop['minimum']}")
        if "maximum" in prop and value > prop["maximum"]:
            errors.append(f"Field '{path}' must be <= {prop['maximum']}")

    if isinstance(value, str):
        if "minLength" in prop and len(value) < prop["minLength"]:
            errors.append(f"Field '{path}' must be at least {prop['minLength']} characters")
        if "maxLength" in prop and len(value) > prop["maxLength"]:
            errors.append(f"Field '{path}' must be at most {prop['maxLength']} characters")
        if "pattern" in prop:
            try:
                if not re.search(prop["pattern"], value):
                    errors.append(f"Field '{path}' does not match pattern {prop['pattern']!r}")
            except re.error:
                errors.append(f"Field '{path}' has an invalid pattern in its schema")

    if isinstance(value, list) and isinstance(prop.get("items"), dict):
        for i, item in enumerate(value):
            _validate_value(prop["items"], item, f"{path}[{i}]", errors)

    if isinstance(value, dict) and (prop.get("properties") or prop.get("required")):
        _validate_object(prop, value, f"{path}.", errors)


def check_type(value: Any, expected: str) -> bool:
    """Check if a value matches the expected JSON Schema type."""
    expected_types = _TYPE_MAP.get(expected)
    if expected_types is None:
        return True
    if isinstance(value, bool) and expected != "boolean":
        return False
    if expected == "integer" and isinstance(value, float):
        return value.is_integer()
    return isinstance(value, expected_types)
