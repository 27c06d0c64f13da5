"""Shared test fixtures for civic-mcp tests.

``FakePage`` stands in for a Playwright page: the DOM is a dict keyed by
selector, and tests script page behaviour with ``on_goto``/``on_click``
hooks. It also answers the in-page backend's DOM script via ``evaluate``.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from sandbox.config import (
    BrowserConfig,
    Config,
    HumanConfig,
    RuntimeConfig,
    SandboxConfig,
    StorageConfig,
)
from sandbox.manifest import AdapterManifest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
ADAPTERS_DIR = PROJECT_ROOT / "adapters"

ALL_PERMISSIONS = [
    "read:forms",
    "write:forms",
    "storage:local",
    "notifications",
    "navigate",
    "human:interact",
]


@dataclass
class FakeElement:
    text: str | None = None
    value: str = ""
    attrs: dict[str, str] = field(default_factory=dict)
    options: list[tuple[str, str]] = field(default_factory=list)  # (label, value)


class FakeLocator:
    def __init__(self, page: FakePage, selector: str) -> None:
        self._page = page
        self._selector = selector

    @property
    def first(self) -> FakeLocator:
        return self

    def _element(self) -> FakeElement:
        el = self._page.elements.get(self._selector)
        if el is None:
            raise RuntimeError(f"locator {self._selector} resolved to no element")
        return el

    async def count(self) -> int:
        return 1 if self._selector in self._page.elements else 0

    async def fill(self, value: str) -> None:
        self._element().value = value
        self._page.actions.append(("fill", self._selector, value))

    async def press_sequentially(self, value: str, delay: float | None = None) -> None:
        self._element().value += value
        self._page.actions.append(("type", self._selector, value))

    async def dispatch_event(self, event: str) -> None:
        self._page.actions.append(("event", self._selector, event))

    async def select_option(self, value: str | None = None, label: str | None = None) -> None:
        el = self._element()
        for opt_label, opt_value in el.options:
            if (label is not None and opt_label == label) or (
                value is not None and opt_value == value
            ):
                el.value = opt_value
                self._page.actions.append(("select", self._selector, opt_value))
                return
        raise RuntimeError(f"no option {value or label} in {self._selector}")

    async def click(self) -> None:
        self._element()
        self._page.actions.append(("click", self._selector))
        hook = self._page.on_click.get(self._selector)
        if hook is not None:
            hook(self._page)

    async def text_content(self) -> str | None:
        return self._element().text

    async def input_value(self) -> str:
        return self._element().value

    async def get_attribute(self, name: str) -> str | None:
        return self._element().attrs.get(name)


class FakePage:
    """Minimal async Playwright ``Page`` double."""

    def __init__(self, url: str = "about:blank") -> None:
        self.url = url
        self.elements: dict[str, FakeElement] = {}
        self.on_goto: dict[str, Callable[[FakePage], None]] = {}
        self.on_click: dict[str, Callable[[FakePage], None]] = {}
        self.fail_goto: set[str] = set()
        self.stall_goto: set[str] = set()
        self.actions: list[tuple[Any, ...]] = []
        self.toasts: list[tuple[str, str]] = []
        self.load_waits = 0
        self.navigation_waits: list[str | None] = []

    def add(self, selector: str, **kwargs: Any) -> FakeElement:
        el = FakeElement(**kwargs)
        self.elements[selector] = el
        return el

    def value_of(self, selector: str) -> str:
        return self.elements[selector].value

    async def goto(self, url: str, timeout: float | None = None, wait_until: str | None = None) -> None:
        self._navigate(url)

    def _navigate(self, url: str) -> None:
        if url in self.fail_goto:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = url
        self.actions.append(("goto", url))
        hook = self.on_goto.get(url)
        if hook is not None:
            hook(self)

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def wait_for_load_state(self, state: str = "load", timeout: float | None = None) -> None:
        self.load_waits += 1

    @contextlib.asynccontextmanager
    async def expect_navigation(
        self, url: str | None = None, wait_until: str | None = None, timeout: float | None = None
    ) -> AsyncIterator[None]:
        before = sum(1 for a in self.actions if a[0] == "goto")
        yield
        if sum(1 for a in self.actions if a[0] == "goto") == before:
            raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for navigation")
        self.navigation_waits.append(wait_until)

    async def evaluate(self, script: str, arg: dict[str, Any]) -> Any:
        op = arg["op"]
        selector = arg.get("selector")
        el = self.elements.get(selector) if selector else None
        if op == "count":
            return 1 if selector in self.elements else 0
        if op == "navigate":
            if arg["url"] not in self.stall_goto:
                self._navigate(arg["url"])
            return None
        if op == "fill":
            if el is None:
                return False
            el.value = arg["value"] if arg["clear"] else el.value + arg["value"]
            self.actions.append(("fill", selector, el.value))
            return True
        if op == "select":
            if el is None:
                return False
            for opt_label, opt_value in el.options:
                if (opt_label if arg["byText"] else opt_value) == arg["value"]:
                    el.value = opt_value
                    self.actions.append(("select", selector, opt_value))
                    return True
            return False
        if op == "click":
            if el is None:
                return False
            self.actions.append(("click", selector))
            hook = self.on_click.get(selector)
            if hook is not None:
                hook(self)
            return True
        if op == "text":
            return el.text.strip() if el is not None and el.text is not None else None
        if op == "value":
            return el.value if el is not None else None
        if op == "attribute":
            return el.attrs.get(arg["name"]) if el is not None else None
        if op == "toast":
            self.toasts.append((arg["level"], arg["message"]))
            return True
        raise RuntimeError(f"Unknown DOM op: {op}")


# ---------------------------------------------------------------------------
# Benefits screener site used by the sample declarative adapter
# ---------------------------------------------------------------------------

SCREENER_URL = "https://benefits.example.gov/screener/snap"
_INCOME_LIMITS = {1: 1580, 2: 2137, 3: 2694, 4: 3250, 5: 3807}


def _show_form(page: FakePage) -> None:
    page.add("#household-size")
    page.add("#monthly-income")
    page.add("#county", options=[("Alpine", "alpine"), ("Butte", "butte"), ("Colusa", "colusa")])
    page.add("#elderly")
    page.add("#check-button")


def _show_results(page: FakePage) -> None:
    size = int(page.value_of("#household-size") or 0)
    income = float(page.value_of("#monthly-income") or 0)
    eligible = income <= _INCOME_LIMITS.get(size, 4000)
    page.add(".results")
    if eligible:
        page.add(".results .status", text="  You may be eligible for SNAP  ")
        page.add(".results .benefit-amount", text="$291.00")
        page.add(".results a.apply", text="Apply", attrs={"href": "https://benefits.example.gov/apply"})
    else:
        page.add(".results .status", text="Not eligible based on income")


def build_screener_page() -> FakePage:
    page = FakePage()

    def _landing(p: FakePage) -> None:
        p.elements.clear()
        p.add("#screener-form")
        p.add("#start-screener")

    page.on_goto[SCREENER_URL] = _landing
    page.on_click["#start-screener"] = _show_form
    page.on_click["#check-button"] = _show_results
    return page


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_manifest(
    adapter_id: str = "gov.example.forms",
    *,
    domains: list[str] | None = None,
    required: list[str] | None = None,
    optional: list[str] | None = None,
    **extra: Any,
) -> AdapterManifest:
    return AdapterManifest.from_dict(
        {
            "id": adapter_id,
            "name": extra.pop("name", "Example Forms"),
            "version": "1.0.0",
            "domains": domains if domains is not None else ["forms.example.gov"],
            "permissions": {
                "required": ALL_PERMISSIONS if required is None else required,
                "optional": optional or [],
            },
            **extra,
        }
    )


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture
def screener_page() -> FakePage:
    return build_screener_page()


@pytest.fixture
def manifest() -> AdapterManifest:
    """Manifest granting every permission on forms.example.gov."""
    return make_manifest()


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Minimal config pointing at the sample adapters."""
    return Config(
        runtime=RuntimeConfig(adapters_dir=str(ADAPTERS_DIR), default_timeout_seconds=0.5),
        browser=BrowserConfig(headless=True),
        storage=StorageConfig(storage_dir=str(tmp_path / "storage")),
        human=HumanConfig(mode="unattended", timeout_seconds=1.0),
        sandbox=SandboxConfig(startup_timeout_seconds=20.0),
        project_root=tmp_path,
    )


@pytest.fixture
def manifest_factory() -> Callable[..., AdapterManifest]:
    """``make_manifest`` for tests that need custom ids, domains or permissions."""
    return make_manifest
