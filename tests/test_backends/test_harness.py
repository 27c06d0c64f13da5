"""Tests for sandbox/backends/harness.py and the sandbox.testing helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from sandbox.backends.harness import AdapterTestHarness
from sandbox.errors import AdapterLoadError, ErrorCode, HumanRequiredError
from sandbox.testing import (
    TEST_HOUSEHOLDS,
    assert_tool_data,
    assert_tool_error,
    assert_tool_success,
    eligibility_payload,
)
from tools.base import ToolResult

from conftest import FakePage

ADAPTERS_DIR = Path(__file__).resolve().parents[2] / "adapters"
CALCULATOR_URL = "https://retirement.example.gov/quickcalc/"


def build_calculator_page(challenge: bool = False) -> FakePage:
    page = FakePage()

    def _landing(p: FakePage) -> None:
        p.elements.clear()
        p.add("#calc-form")
        for selector in ("#dob-month", "#dob-day", "#dob-year", "#earnings", "#calculate"):
            p.add(selector)
        p.add("#dollar-type", options=[("Today's dollars", "today"), ("Future dollars", "future")])

    def _calculate(p: FakePage) -> None:
        if challenge:
            p.add("#verification-challenge")
        p.add("#results")
        p.add("#benefit-62", text=" $1,234.00 ")
        p.add("#benefit-fra", text="$1,800")
        p.add("#benefit-70", text="$2,300.50")

    page.on_goto[CALCULATOR_URL] = _landing
    page.on_click["#calculate"] = _calculate
    return page


class TestLifecycle:
    def test_not_started(self) -> None:
        harness = AdapterTestHarness(ADAPTERS_DIR / "gov.example.benefits", headed=False)
        with pytest.raises(RuntimeError, match="not started"):
            harness.manifest
        with pytest.raises(RuntimeError, match="not started"):
            harness.backend

    @pytest.mark.asyncio
    async def test_missing_adapter(self, tmp_path: Path) -> None:
        harness = AdapterTestHarness(tmp_path, headed=False, page=FakePage())
        with pytest.raises(AdapterLoadError, match="no manifest.json"):
            await harness.start()

    def test_headed_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CIVIC_MCP_HEADED", "1")
        assert AdapterTestHarness(ADAPTERS_DIR / "gov.example.benefits").headed is True
        monkeypatch.setenv("CIVIC_MCP_HEADED", "0")
        assert AdapterTestHarness(ADAPTERS_DIR / "gov.example.benefits").headed is False


class TestDeclarativeAdapter:
    @pytest.mark.asyncio
    async def test_eligible_household(self, screener_page: FakePage) -> None:
        async with AdapterTestHarness(
            ADAPTERS_DIR / "gov.example.benefits", headed=False, page=screener_page, timeout=0.5
        ) as harness:
            assert harness.manifest.id == "gov.example.benefits"
            assert harness.registry.names() == ["gov.example.benefits__check_eligibility"]
            result = await harness.test_tool(
                "check_eligibility", eligibility_payload("family_moderate", county="alpine")
            )
            assert harness.page is screener_page
        assert_tool_success(result, eligible=True, estimated_benefit=291.0)
        assert assert_tool_data(result, "next_steps_url") == "https://benefits.example.gov/apply"

    @pytest.mark.asyncio
    async def test_ineligible_household_by_namespaced_name(self, screener_page: FakePage) -> None:
        async with AdapterTestHarness(
            ADAPTERS_DIR / "gov.example.benefits", headed=False, page=screener_page, timeout=0.5
        ) as harness:
            result = await harness.test_tool(
                "gov.example.benefits__check_eligibility",
                eligibility_payload("family_above_limit"),
            )
        assert_tool_success(result, {"eligible": False, "estimated_benefit": None})

    @pytest.mark.asyncio
    async def test_invalid_params(self, screener_page: FakePage) -> None:
        async with AdapterTestHarness(
            ADAPTERS_DIR / "gov.example.benefits", headed=False, page=screener_page
        ) as harness:
            result = await harness.test_tool("check_eligibility", {"household_size": 2})
        assert_tool_error(result, "VALIDATION_ERROR")
        assert screener_page.actions == []


class TestScriptedAdapter:
    @pytest.mark.asyncio
    async def test_estimate_and_recall(self) -> None:
        page = build_calculator_page()
        async with AdapterTestHarness(
            ADAPTERS_DIR / "gov.example.retirement", headed=False, page=page, timeout=0.5
        ) as harness:
            before = await harness.test_tool("last_estimate")
            result = await harness.test_tool(
                "estimate_benefit", {"birth_year": 1958, "annual_earnings": 52000}
            )
            after = await harness.test_tool("last_estimate")

        assert_tool_error(before, ErrorCode.VALIDATION_ERROR)
        assert_tool_success(
            result,
            at_62=1234.0,
            at_full_retirement_age=1800.0,
            at_70=2300.5,
            full_retirement_age="66 and 8 months",
            summary="About $1,800.00 per month at full retirement age",
        )
        assert after.data == result.data
        assert page.value_of("#dob-year") == "1958"
        assert page.value_of("#dollar-type") == "today"

    @pytest.mark.asyncio
    async def test_verification_challenge_skips_unattended(self) -> None:
        page = build_calculator_page(challenge=True)
        async with AdapterTestHarness(
            ADAPTERS_DIR / "gov.example.retirement", headed=False, page=page, timeout=0.5
        ) as harness:
            with pytest.raises(HumanRequiredError, match="verification check"):
                await harness.test_tool(
                    "estimate_benefit", {"birth_year": 1990, "annual_earnings": 40000}
                )


class TestAssertions:
    def test_success_helpers(self) -> None:
        result = ToolResult.ok({"eligible": True, "amount": 0})
        assert_tool_success(result)
        assert_tool_success(result, eligible=True)
        with pytest.raises(AssertionError, match="amount"):
            assert_tool_data(result, "missing")
        with pytest.raises(AssertionError, match="Expected data\\['eligible'\\]"):
            assert_tool_success(result, eligible=False)
        with pytest.raises(AssertionError):
            assert_tool_error(result)

    def test_error_helpers(self) -> None:
        result = ToolResult.fail("Site changed", ErrorCode.SITE_CHANGED)
        assert_tool_error(result)
        assert_tool_error(result, "SITE_CHANGED")
        with pytest.raises(AssertionError, match="SITE_CHANGED"):
            assert_tool_success(result)
        with pytest.raises(AssertionError):
            assert_tool_error(result, ErrorCode.RATE_LIMITED)

    def test_fixture_data(self) -> None:
        assert eligibility_payload("elderly_single", has_elderly_member=True) == {
            "household_size": 1,
            "monthly_income": 1100,
            "has_elderly_member": True,
        }
        assert all(h["household_size"] >= 1 for h in TEST_HOUSEHOLDS.values())
