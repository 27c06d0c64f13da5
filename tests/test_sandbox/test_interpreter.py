"""Tests for sandbox/interpreter.py: parsing, coercion and the five-stage run."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from sandbox.backends.playwright_page import PlaywrightPage
from sandbox.capability import CapabilityContext, build_context
from sandbox.errors import AdapterLoadError, ErrorCode, HumanRequiredError
from sandbox.human import UnattendedCoordinator
from sandbox.interpreter import (
    DeclarativeToolSpec,
    coerce_output,
    format_input,
    input_schema_for,
    parse_declarative_config,
    run_declarative,
)
from sandbox.manifest import AdapterManifest, load_manifest
from sandbox.storage import MemoryBackend
from sandbox.testing import TEST_HOUSEHOLDS, eligibility_payload

BENEFITS_DIR_NAME = "gov.example.benefits"


def _benefits_spec(adapters_dir: Path) -> tuple[AdapterManifest, DeclarativeToolSpec]:
    directory = adapters_dir / BENEFITS_DIR_NAME
    manifest = load_manifest(directory / "manifest.json")
    data = json.loads((directory / "declarative.json").read_text())
    return manifest, parse_declarative_config(data)[0]


def _context(page: Any, manifest: AdapterManifest, timeout: float = 0.5) -> CapabilityContext:
    api = PlaywrightPage(page, manifest, UnattendedCoordinator(), default_timeout=timeout)
    return build_context(manifest, api, MemoryBackend())


@pytest.fixture
def adapters_dir() -> Path:
    return Path(__file__).resolve().parents[2] / "adapters"


class TestParse:
    def test_sample_adapter(self, adapters_dir: Path) -> None:
        _, spec = _benefits_spec(adapters_dir)
        assert spec.name == "check_eligibility"
        assert spec.navigation.click_first == "#start-screener"
        assert spec.inputs["county"].type == "select"
        assert [o.label for o in spec.inputs["county"].options] == ["Alpine", "Butte", "Colusa"]
        assert spec.output["next_steps_url"].attribute == "href"
        assert spec.submit.wait_for_selector == ".results"

    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"tools": [{"name": "t"}]},
            {"tools": [{"name": "t", "navigation": {"url": "https://x.gov"}}]},
            {
                "tools": [
                    {
                        "name": "t",
                        "navigation": {"url": "https://x.gov"},
                        "submit": {"selector": "#go"},
                        "inputs": {"a": {"type": "text"}},
                    }
                ]
            },
            {
                "tools": [
                    {
                        "name": "t",
                        "navigation": {"url": "https://x.gov"},
                        "submit": {"selector": "#go"},
                        "inputs": {"a": {"selector": "#a", "type": "color"}},
                    }
                ]
            },
            {
                "tools": [
                    {
                        "name": "t",
                        "navigation": {"url": "https://x.gov"},
                        "submit": {"selector": "#go"},
                        "output": {"r": {"selector": "#r", "type": "blob"}},
                    }
                ]
            },
        ],
    )
    def test_structural_errors(self, data: dict) -> None:
        with pytest.raises(AdapterLoadError):
            parse_declarative_config(data)

    def test_input_schema(self, adapters_dir: Path) -> None:
        _, spec = _benefits_spec(adapters_dir)
        schema = input_schema_for(spec)
        assert schema["required"] == ["household_size", "monthly_income"]
        assert schema["properties"]["household_size"]["type"] == "number"
        assert schema["properties"]["county"]["enum"] == ["alpine", "butte", "colusa"]
        assert schema["properties"]["has_elderly_member"] == {
            "type": "boolean",
            "description": "Value for has_elderly_member",
            "default": False,
        }


class TestCoercion:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(2500, "2500"), (2500.0, "2500"), (2500.5, "2500.5"), (True, "true"), (False, "false"), ("x", "x")],
    )
    def test_format_input(self, value: Any, expected: str) -> None:
        assert format_input(value) == expected

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("$1,234.56", 1234.56), ("$0.00", 0.0), ("N/A", None), (None, None)],
    )
    def test_number(self, raw: str | None, expected: float | None) -> None:
        assert coerce_output(raw, "number") == expected

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Yes", True),
            ("You may be ELIGIBLE", True),
            ("Application approved", True),
            ("true", True),
            ("Not eligible based on income", False),
            ("Ineligible", False),
            ("Denied", False),
            ("No", False),
            ("Pending review", False),
        ],
    )
    def test_boolean(self, raw: str, expected: bool) -> None:
        assert coerce_output(raw, "boolean") is expected

    def test_passthrough(self) -> None:
        assert coerce_output("03/01/2026", "date") == "03/01/2026"
        assert coerce_output("<b>x</b>", "html") == "<b>x</b>"


class TestRunDeclarative:
    @pytest.mark.asyncio
    async def test_eligible_household(self, adapters_dir: Path, screener_page: Any) -> None:
        manifest, spec = _benefits_spec(adapters_dir)
        params = eligibility_payload("family_moderate", county="Butte")
        result = await run_declarative(spec, params, _context(screener_page, manifest))

        assert result.success, result.error
        assert result.data == {
            "eligible": True,
            "estimated_benefit": 291.0,
            "next_steps_url": "https://benefits.example.gov/apply",
        }
        assert screener_page.value_of("#household-size") == "3"
        assert screener_page.value_of("#monthly-income") == "2500"
        assert screener_page.value_of("#county") == "butte"
        assert screener_page.value_of("#elderly") == "false"

    @pytest.mark.asyncio
    async def test_ineligible_household_optional_outputs_null(
        self, adapters_dir: Path, screener_page: Any
    ) -> None:
        manifest, spec = _benefits_spec(adapters_dir)
        household = TEST_HOUSEHOLDS["family_above_limit"]
        params = {
            "household_size": household["household_size"],
            "monthly_income": household["monthly_income"],
            "county": None,
        }
        result = await run_declarative(spec, params, _context(screener_page, manifest))

        assert result.success
        assert result.data == {"eligible": False, "estimated_benefit": None, "next_steps_url": None}
        assert screener_page.value_of("#county") == ""

    @pytest.mark.asyncio
    async def test_missing_required_output(self, adapters_dir: Path, screener_page: Any) -> None:
        manifest, spec = _benefits_spec(adapters_dir)
        screener_page.on_click["#check-button"] = lambda p: p.add(".results")
        result = await run_declarative(
            spec, eligibility_payload("single_low_income"), _context(screener_page, manifest)
        )
        assert not result.success
        assert result.code == ErrorCode.SELECTOR_NOT_FOUND
        assert result.error == 'Output selector not found: ".results .status"'

    @pytest.mark.asyncio
    async def test_site_changed_form(self, adapters_dir: Path, screener_page: Any) -> None:
        manifest, spec = _benefits_spec(adapters_dir)
        screener_page.on_click["#start-screener"] = lambda p: p.add("#check-button")
        result = await run_declarative(
            spec, eligibility_payload("single_low_income"), _context(screener_page, manifest)
        )
        assert result.code == ErrorCode.SELECTOR_NOT_FOUND
        assert "#household-size" in (result.error or "")

    @pytest.mark.asyncio
    async def test_navigation_failure(self, adapters_dir: Path, screener_page: Any) -> None:
        manifest, spec = _benefits_spec(adapters_dir)
        screener_page.fail_goto.add(spec.navigation.url)
        result = await run_declarative(spec, {}, _context(screener_page, manifest))
        assert result.code == ErrorCode.NAVIGATION_FAILED

    @pytest.mark.asyncio
    async def test_off_allowlist_recipe_blocked(
        self, fake_page: Any, manifest_factory: Callable[..., AdapterManifest]
    ) -> None:
        manifest = manifest_factory(domains=["benefits.example.gov/screener"])
        spec = parse_declarative_config(
            {
                "tools": [
                    {
                        "name": "t",
                        "navigation": {"url": "https://benefits.example.gov/admin"},
                        "submit": {"selector": "#go"},
                    }
                ]
            }
        )[0]
        result = await run_declarative(spec, {}, _context(fake_page, manifest))
        assert result.code == ErrorCode.NAVIGATION_FAILED
        assert fake_page.actions == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_unknown(self, adapters_dir: Path, screener_page: Any) -> None:
        manifest, spec = _benefits_spec(adapters_dir)
        ctx = _context(screener_page, manifest)

        async def _boom(*args: Any, **kwargs: Any) -> None:
            raise KeyError("boom")

        ctx.page.navigate = _boom  # type: ignore[method-assign]
        result = await run_declarative(spec, {}, ctx)
        assert not result.success
        assert result.code == ErrorCode.UNKNOWN

    @pytest.mark.asyncio
    async def test_human_required_propagates(self, adapters_dir: Path, screener_page: Any) -> None:
        manifest, spec = _benefits_spec(adapters_dir)
        ctx = _context(screener_page, manifest)

        async def _needs_human(*args: Any, **kwargs: Any) -> None:
            raise HumanRequiredError("Solve the CAPTCHA")

        ctx.page.navigate = _needs_human  # type: ignore[method-assign]
        with pytest.raises(HumanRequiredError):
            await run_declarative(spec, {}, ctx)
