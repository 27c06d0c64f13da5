"""The capability API: the only channel through which adapter code acts.

``PageAPI`` is a template. Its public methods enforce the adapter's
manifest (permissions, the domain allow-list, value sanitisation,
presence checks, polling waits) and then call a small set of backend
primitives. Backends override only the primitives, so every host applies
the same checks in the same order.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any

from sandbox.errors import (
    DomainNotAllowedError,
    NavigationError,
    PermissionDeniedError,
    SelectorNotFoundError,
    SelectorTimeoutError,
)
from sandbox.human import HumanCoordinator
from sandbox.manifest import AdapterManifest, Permission, is_url_allowed
from sandbox.storage import MAX_STORAGE_BYTES, ScopedStorage, StorageBackend
from sandbox.utils import UtilsAPI

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_HUMAN_TIMEOUT = 300.0

# C0 controls except tab, LF and CR, plus DEL.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def sanitize_field_value(value: Any) -> str:
    """Coerce ``value`` to text and strip control characters."""
    return _CONTROL_CHARS_RE.sub("", "" if value is None else str(value))


class PageAPI(abc.ABC):
    """Page automation surface bound to one adapter manifest."""

    def __init__(
        self,
        manifest: AdapterManifest,
        human: HumanCoordinator,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        human_timeout: float = DEFAULT_HUMAN_TIMEOUT,
    ) -> None:
        self._manifest = manifest
        self._human = human
        self._default_timeout = default_timeout
        self._human_timeout = human_timeout

    @property
    def manifest(self) -> AdapterManifest:
        return self._manifest

    def _require(self, permission: Permission) -> None:
        if not self._manifest.allows(permission):
            raise PermissionDeniedError(
                f'Adapter "{self._manifest.id}" lacks the "{permission}" permission'
            )

    async def _present(self, selector: str) -> bool:
        try:
            return await self._count(selector) > 0
        except Exception as e:
            logger.debug("Selector lookup failed for %r: %s", selector, e)
            return False

    # --- navigation --------------------------------------------------------

    async def navigate(
        self,
        url: str,
        *,
        ready_selector: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Load ``url`` after checking it against the allowed domains.

        Raises:
            DomainNotAllowedError: before any page action, if the URL is
                outside the manifest's allow-list.
            NavigationError: if the page fails to load.
            SelectorTimeoutError: if ``ready_selector`` never appears.
        """
        self._require(Permission.NAVIGATE)
        if not is_url_allowed(url, self._manifest.domains):
            raise DomainNotAllowedError(
                f'Navigation to "{url}" blocked: domain not in allowlist '
                f'for adapter "{self._manifest.id}"'
            )
        timeout = self._default_timeout if timeout is None else timeout
        logger.debug("[%s] navigate %s", self._manifest.id, url)
        try:
            await self._goto(url, timeout)
        except Exception as e:
            raise NavigationError(f"Navigation to {url} failed: {e}") from e
        if ready_selector:
            await self.wait_for_selector(ready_selector, timeout=timeout)

    def current_url(self) -> str:
        return self._url()

    # --- writes ------------------------------------------------------------

    async def fill_field(
        self,
        selector: str,
        value: Any,
        *,
        clear: bool = True,
        type_delay: float | None = None,
    ) -> None:
        self._require(Permission.WRITE_FORMS)
        if not await self._present(selector):
            raise SelectorNotFoundError(f"Element not found: {selector}")
        await self._fill(selector, sanitize_field_value(value), clear, type_delay)

    async def select_option(self, selector: str, value: Any, *, by_text: bool = False) -> None:
        self._require(Permission.WRITE_FORMS)
        if not await self._present(selector):
            raise SelectorNotFoundError(f"Element not found: {selector}")
        await self._select(selector, sanitize_field_value(value), by_text)

    async def click(
        self,
        selector: str,
        *,
        wait_for_navigation: bool = False,
        timeout: float | None = None,
    ) -> None:
        self._require(Permission.WRITE_FORMS)
        if not await self._present(selector):
            raise SelectorNotFoundError(f"Element not found: {selector}")
        await self._click(selector)
        if wait_for_navigation:
            await self._wait_for_load(self._default_timeout if timeout is None else timeout)

    # --- reads (never raise on absence) -------------------------------------

    async def get_text(self, selector: str) -> str | None:
        self._require(Permission.READ_FORMS)
        return await self._read(selector, self._text)

    async def get_value(self, selector: str) -> str | None:
        self._require(Permission.READ_FORMS)
        return await self._read(selector, self._value)

    async def get_attribute(self, selector: str, name: str) -> str | None:
        self._require(Permission.READ_FORMS)

        async def _attr(sel: str) -> str | None:
            return await self._attribute(sel, name)

        return await self._read(selector, _attr)

    async def _read(self, selector: str, reader: Any) -> str | None:
        if not await self._present(selector):
            return None
        try:
            return await reader(selector)
        except Exception as e:
            logger.debug("Read of %r failed: %s", selector, e)
            return None

    async def exists(self, selector: str) -> bool:
        self._require(Permission.READ_FORMS)
        return await self._present(selector)

    # --- waits -------------------------------------------------------------

    async def wait_for_selector(
        self,
        selector: str,
        *,
        timeout: float | None = None,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._require(Permission.READ_FORMS)
        await self._poll(selector, True, timeout, interval)

    async def wait_for_selector_gone(
        self,
        selector: str,
        *,
        timeout: float | None = None,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._require(Permission.READ_FORMS)
        await self._poll(selector, False, timeout, interval)

    async def _poll(
        self, selector: str, present: bool, timeout: float | None, interval: float
    ) -> None:
        timeout = self._default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self._present(selector) == present:
                return
            if loop.time() >= deadline:
                what = "" if present else " to disappear"
                raise SelectorTimeoutError(
                    f"Timed out after {timeout:g}s waiting for {selector}{what}"
                )
            await asyncio.sleep(interval)

    # --- human-in-the-loop ---------------------------------------------------

    async def wait_for_human(
        self, prompt: str | None = None, timeout: float | None = None
    ) -> None:
        self._require(Permission.HUMAN_INTERACT)
        await self._human.wait(
            prompt,
            self._human_timeout if timeout is None else timeout,
            adapter_id=self._manifest.id,
        )

    # --- backend primitives ---------------------------------------------------

    @abc.abstractmethod
    async def _goto(self, url: str, timeout: float) -> None: ...

    @abc.abstractmethod
    async def _count(self, selector: str) -> int: ...

    @abc.abstractmethod
    async def _fill(
        self, selector: str, value: str, clear: bool, type_delay: float | None
    ) -> None: ...

    @abc.abstractmethod
    async def _select(self, selector: str, value: str, by_text: bool) -> None: ...

    @abc.abstractmethod
    async def _click(self, selector: str) -> None: ...

    @abc.abstractmethod
    async def _wait_for_load(self, timeout: float) -> None: ...

    @abc.abstractmethod
    async def _text(self, selector: str) -> str | None: ...

    @abc.abstractmethod
    async def _value(self, selector: str) -> str | None: ...

    @abc.abstractmethod
    async def _attribute(self, selector: str, name: str) -> str | None: ...

    @abc.abstractmethod
    def _url(self) -> str: ...


class NotifyAPI(abc.ABC):
    """One-way operator notifications. Never raises, never blocks."""

    def __init__(self, adapter_id: str, *, permitted: bool = True) -> None:
        self.adapter_id = adapter_id
        self._permitted = permitted

    def info(self, message: str) -> None:
        self._send("info", message)

    def warn(self, message: str) -> None:
        self._send("warn", message)

    def error(self, message: str) -> None:
        self._send("error", message)

    def _send(self, level: str, message: Any) -> None:
        if not self._permitted:
            logger.debug(
                'Dropped notification from "%s" (no "notifications" permission)',
                self.adapter_id,
            )
            return
        try:
            self._deliver(level, str(message))
        except Exception as e:
            logger.debug("Notification delivery failed for %s: %s", self.adapter_id, e)

    @abc.abstractmethod
    def _deliver(self, level: str, message: str) -> None: ...


_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class LoggingNotifier(NotifyAPI):
    """Notifications become log records under ``civic_mcp.adapter.<id>``."""

    def __init__(self, adapter_id: str, *, permitted: bool = True) -> None:
        super().__init__(adapter_id, permitted=permitted)
        self._logger = logging.getLogger(f"civic_mcp.adapter.{adapter_id}")

    def _deliver(self, level: str, message: str) -> None:
        self._logger.log(_LOG_LEVELS.get(level, logging.INFO), message)


@dataclass(frozen=True)
class CapabilityContext:
    """Per-invocation bundle of the four capability surfaces."""

    page: PageAPI
    storage: ScopedStorage
    notify: NotifyAPI
    utils: UtilsAPI


def build_context(
    manifest: AdapterManifest,
    page: PageAPI,
    storage_backend: StorageBackend,
    notify: NotifyAPI | None = None,
    *,
    quota_bytes: int = MAX_STORAGE_BYTES,
) -> CapabilityContext:
    """Bind the storage and notify surfaces to ``manifest`` and bundle them."""
    return CapabilityContext(
        page=page,
        storage=ScopedStorage(
            manifest.id,
            storage_backend,
            quota_bytes,
            permitted=manifest.allows(Permission.STORAGE_LOCAL),
        ),
        notify=notify
        or LoggingNotifier(manifest.id, permitted=manifest.allows(Permission.NOTIFICATIONS)),
        utils=UtilsAPI(),
    )
