"""In-page backend: the runtime embedded in the single page it automates.

All page primitives go through one DOM script evaluated in the page, the
way a content script would touch the document directly. Storage lives in
a ``SharedStore`` under ``civic-mcp:plugin:<id>:`` keys, notifications
are rendered as toasts, and human steps are published to the same store
for a UI surface to complete. There is only one page, so calls run one
at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from sandbox.backends import Backend
from sandbox.capability import (
    DEFAULT_HUMAN_TIMEOUT,
    DEFAULT_TIMEOUT,
    CapabilityContext,
    NotifyAPI,
    PageAPI,
    build_context,
)
from sandbox.human import HumanCoordinator, HumanRequest, StoreCoordinator
from sandbox.manifest import AdapterManifest, Permission
from sandbox.storage import MAX_STORAGE_BYTES, SharedStore, SharedStoreBackend

logger = logging.getLogger(__name__)

DOM_SCRIPT = """
(arg) => {
  const el = arg.selector ? document.querySelector(arg.selector) : null;
  const fire = (node, type) => node.dispatchEvent(new Event(type, { bubbles: true }));
  const setValue = (node, value) => {
    const proto = Object.getPrototypeOf(node);
    const desc = Object.getOwnPropertyDescriptor(proto, 'value');
    if (desc && desc.set) desc.set.call(node, value); else node.value = value;
  };
  switch (arg.op) {
    case 'count':
      return document.querySelectorAll(arg.selector).length;
    case 'navigate':
      setTimeout(() => { window.location.href = arg.url; }, 0);
      return null;
    case 'fill': {
      if (!el) return false;
      el.focus();
      setValue(el, arg.clear ? arg.value : (el.value || '') + arg.value);
      fire(el, 'input');
      fire(el, 'change');
      return true;
    }
    case 'select': {
      if (!el) return false;
      const opt = Array.from(el.options || []).find((o) =>
        arg.byText ? o.text.trim() === arg.value : o.value === arg.value);
      if (!opt) return false;
      setValue(el, opt.value);
      fire(el, 'input');
      fire(el, 'change');
      return true;
    }
    case 'click':
      if (!el) return false;
      el.click();
      return true;
    case 'text':
      return el ? (el.textContent || '').trim() : null;
    case 'value':
      return el && 'value' in el ? el.value : null;
    case 'attribute':
      return el ? el.getAttribute(arg.name) : null;
    case 'toast': {
      const toast = document.createElement('div');
      const colors = { info: '#1d4ed8', warn: '#b45309', error: '#b91c1c' };
      toast.textContent = arg.message;
      toast.setAttribute('data-civic-mcp-toast', arg.level);
      Object.assign(toast.style, {
        position: 'fixed', bottom: '20px', right: '20px', zIndex: '2147483647',
        background: colors[arg.level] || colors.info, color: '#fff',
        padding: '10px 16px', borderRadius: '8px', font: '14px system-ui, sans-serif',
      });
      document.body.appendChild(toast);
      setTimeout(() => toast.remove(), 4000);
      return true;
    }
    default:
      throw new Error('Unknown DOM op: ' + arg.op);
  }
}
"""


class InPagePage(PageAPI):
    """DOM-script primitives against the embedding page."""

    def __init__(self, page: Any, manifest: AdapterManifest, human: HumanCoordinator, **kwargs: Any) -> None:
        super().__init__(manifest, human, **kwargs)
        self._page = page

    async def _dom(self, op: str, **arg: Any) -> Any:
        return await self._page.evaluate(DOM_SCRIPT, {"op": op, **arg})

    async def _goto(self, url: str, timeout: float) -> None:
        # The old document is already loaded; wait on the navigation itself.
        async with self._page.expect_navigation(wait_until="load", timeout=timeout * 1000):
            await self._dom("navigate", url=url)

    async def _count(self, selector: str) -> int:
        return int(await self._dom("count", selector=selector) or 0)

    async def _fill(
        self, selector: str, value: str, clear: bool, type_delay: float | None
    ) -> None:
        if not type_delay:
            await self._dom("fill", selector=selector, value=value, clear=clear)
            return
        if clear:
            await self._dom("fill", selector=selector, value="", clear=True)
        for ch in value:
            await self._dom("fill", selector=selector, value=ch, clear=False)
            await asyncio.sleep(type_delay)

    async def _select(self, selector: str, value: str, by_text: bool) -> None:
        if not await self._dom("select", selector=selector, value=value, byText=by_text):
            raise ValueError(f'No option "{value}" in {selector}')

    async def _click(self, selector: str) -> None:
        await self._dom("click", selector=selector)

    async def _wait_for_load(self, timeout: float) -> None:
        await self._page.wait_for_load_state("load", timeout=timeout * 1000)

    async def _text(self, selector: str) -> str | None:
        return await self._dom("text", selector=selector)

    async def _value(self, selector: str) -> str | None:
        return await self._dom("value", selector=selector)

    async def _attribute(self, selector: str, name: str) -> str | None:
        return await self._dom("attribute", selector=selector, name=name)

    def _url(self) -> str:
        return self._page.url


class ToastNotifier(NotifyAPI):
    """Renders notifications as toasts on the page. Fire-and-forget."""

    def __init__(self, page: Any, adapter_id: str, *, permitted: bool = True) -> None:
        super().__init__(adapter_id, permitted=permitted)
        self._page = page
        self._logger = logging.getLogger(f"civic_mcp.adapter.{adapter_id}")
        self._tasks: set[asyncio.Task[Any]] = set()

    def _deliver(self, level: str, message: str) -> None:
        self._logger.info("[%s] %s", level, message)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(
            self._page.evaluate(
                DOM_SCRIPT,
                {"op": "toast", "level": level, "message": f"[{self.adapter_id}] {message}"},
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Toast failed: %s", task.exception())


class InPageBackend(Backend):
    """Single embedded page; one call at a time."""

    def __init__(
        self,
        page: Any,
        store: SharedStore | None = None,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        human_timeout: float = DEFAULT_HUMAN_TIMEOUT,
        quota_bytes: int = MAX_STORAGE_BYTES,
    ) -> None:
        self._page = page
        self.store = store or SharedStore()
        self.human = StoreCoordinator(self.store)
        self._storage = SharedStoreBackend(self.store)
        self._default_timeout = default_timeout
        self._human_timeout = human_timeout
        self._quota = quota_bytes
        self._lock = asyncio.Lock()

    @contextlib.asynccontextmanager
    async def session(self, manifest: AdapterManifest) -> AsyncIterator[CapabilityContext]:
        async with self._lock:
            page = InPagePage(
                self._page,
                manifest,
                self.human,
                default_timeout=self._default_timeout,
                human_timeout=self._human_timeout,
            )
            notifier = ToastNotifier(
                self._page, manifest.id, permitted=manifest.allows(Permission.NOTIFICATIONS)
            )
            yield build_context(manifest, page, self._storage, notifier, quota_bytes=self._quota)

    def pending_human_requests(self) -> list[HumanRequest]:
        """What a UI surface would list as waiting for the user."""
        return self.human.published()

    def complete_human_request(self, request_id: str) -> bool:
        """The UI's one-click "done" action."""
        return self.human.complete(request_id)
