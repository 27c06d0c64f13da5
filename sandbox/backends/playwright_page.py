"""``PageAPI`` primitives over a Playwright async ``Page``."""

from __future__ import annotations

from typing import Any

from sandbox.capability import PageAPI
from sandbox.human import HumanCoordinator
from sandbox.manifest import AdapterManifest


def _ms(seconds: float) -> float:
    return seconds * 1000


class PlaywrightPage(PageAPI):
    """Drives a real (or test double) Playwright page. Acts on the first match."""

    def __init__(
        self,
        page: Any,
        manifest: AdapterManifest,
        human: HumanCoordinator,
        **kwargs: Any,
    ) -> None:
        super().__init__(manifest, human, **kwargs)
        self._page = page

    @property
    def raw(self) -> Any:
        return self._page

    async def _goto(self, url: str, timeout: float) -> None:
        await self._page.goto(url, timeout=_ms(timeout), wait_until="domcontentloaded")

    async def _count(self, selector: str) -> int:
        return await self._page.locator(selector).count()

    async def _fill(
        self, selector: str, value: str, clear: bool, type_delay: float | None
    ) -> None:
        field = self._page.locator(selector).first
        if type_delay:
            if clear:
                await field.fill("")
            await field.press_sequentially(value, delay=_ms(type_delay))
        elif clear:
            await field.fill(value)
        else:
            await field.press_sequentially(value)
        # Framework-bound forms listen for change as well as input.
        await field.dispatch_event("change")

    async def _select(self, selector: str, value: str, by_text: bool) -> None:
        field = self._page.locator(selector).first
        if by_text:
            await field.select_option(label=value)
        else:
            await field.select_option(value=value)

    async def _click(self, selector: str) -> None:
        await self._page.locator(selector).first.click()

    async def _wait_for_load(self, timeout: float) -> None:
        await self._page.wait_for_load_state("load", timeout=_ms(timeout))

    async def _text(self, selector: str) -> str | None:
        text = await self._page.locator(selector).first.text_content()
        return text.strip() if text is not None else None

    async def _value(self, selector: str) -> str | None:
        return await self._page.locator(selector).first.input_value()

    async def _attribute(self, selector: str, name: str) -> str | None:
        return await self._page.locator(selector).first.get_attribute(name)

    def _url(self) -> str:
        return self._page.url
