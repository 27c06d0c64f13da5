"""Assertions and fixture data for adapter test suites.

Used together with ``sandbox.backends.harness.AdapterTestHarness``. The
personal data below is obviously fake: SSNs are in the never-issued
``000-`` range and addresses use the reserved ``Anytown`` placeholders.
"""

from __future__ import annotations

from typing import Any

from sandbox.errors import ErrorCode
from tools.base import ToolResult


def assert_tool_success(result: ToolResult, expected: dict[str, Any] | None = None, **fields: Any) -> None:
    """Assert the call succeeded and, optionally, that data contains ``expected``."""
    assert result.success, f"Expected tool success but got error [{result.code}]: {result.error}"
    wanted = {**(expected or {}), **fields}
    for key, value in wanted.items():
        assert key in result.data, f"Expected data key {key!r}; got keys {sorted(result.data)}"
        assert result.data[key] == value, (
            f"Expected data[{key!r}] == {value!r}, got {result.data[key]!r}"
        )


def assert_tool_error(result: ToolResult, code: ErrorCode | str | None = None) -> None:
    """Assert the call failed, optionally with a specific error code."""
    assert not result.success, f"Expected tool error but got success: {result.data}"
    if code is not None:
        assert result.code == ErrorCode(code), f"Expected error code {code}, got {result.code}"


def assert_tool_data(result: ToolResult, key: str) -> Any:
    """Assert ``data[key]`` is present and non-null; returns it."""
    assert result.success, f"Expected tool success but got error [{result.code}]: {result.error}"
    value = result.data.get(key)
    assert value is not None, f"Expected non-null data[{key!r}]; got keys {sorted(result.data)}"
    return value


TEST_HOUSEHOLDS: dict[str, dict[str, Any]] = {
    "single_low_income": {
        "household_size": 1,
        "monthly_income": 900,
        "annual_income": 10800,
    },
    "family_moderate": {
        "household_size": 3,
        "monthly_income": 2500,
        "annual_income": 30000,
    },
    "family_above_limit": {
        "household_size": 4,
        "monthly_income": 6000,
        "annual_income": 72000,
    },
    "elderly_single": {
        "household_size": 1,
        "monthly_income": 1100,
        "annual_income": 13200,
        "elderly": True,
    },
}

TEST_PERSONS: dict[str, dict[str, str]] = {
    "jane": {
        "first_name": "Jane",
        "last_name": "Smith",
        "date_of_birth": "1985-04-12",
        "ssn": "000-00-0001",
    },
    "john": {
        "first_name": "John",
        "last_name": "Smith",
        "date_of_birth": "1952-09-30",
        "ssn": "000-00-0002",
    },
}

TEST_ADDRESSES: dict[str, dict[str, str]] = {
    "urban": {
        "street": "123 Main St",
        "city": "Anytown",
        "state": "CA",
        "zip": "90001",
    },
    "rural": {
        "street": "4500 County Road 12",
        "city": "Anytown",
        "state": "TX",
        "zip": "75001",
    },
}


def eligibility_payload(household: str, **overrides: Any) -> dict[str, Any]:
    """Tool params for an eligibility check built from a named household."""
    base = TEST_HOUSEHOLDS[household]
    payload: dict[str, Any] = {
        "household_size": base["household_size"],
        "monthly_income": base["monthly_income"],
    }
    payload.update(overrides)
    return payload
