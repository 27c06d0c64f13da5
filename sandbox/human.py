"""Human-in-the-loop suspension: pause an automation until a person acts.

Each suspension is one ``HumanRequest`` with a fresh id, a prompt, and a
deadline. It moves from ``pending`` to ``completed`` at most once, and only
a completion carrying the *same* id can resolve it. Waiters are plain
futures resolved by an external event; nothing busy-polls shared state.

Realisations:
- ``StoreCoordinator``: request published to a ``SharedStore``; a UI
  surface (or ``complete()``) flips it to done.
- ``TerminalCoordinator``: prompt on stderr, Enter on the terminal.
- ``ListenerCoordinator``: throwaway local page + WebSocket acknowledgment.
- ``UnattendedCoordinator``: nobody is watching, fail fast with
  ``HumanRequiredError``.
"""

from __future__ import annotations

import abc
import asyncio
import html
import json
import logging
import sys
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from rich.console import Console
from rich.panel import Panel

from sandbox.errors import HumanRequiredError, HumanTimeoutError
from sandbox.storage import SharedStore

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "Manual step required: complete the action in the browser window"
HUMAN_REQUEST_PREFIX = "civic-mcp:human-required:"


class HumanStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass
class HumanRequest:
    request_id: str
    prompt: str
    deadline: float
    adapter_id: str = ""
    status: HumanStatus = HumanStatus.PENDING
    created_at: float = field(default_factory=time.time)

    @property
    def expired(self) -> bool:
        return time.time() >= self.deadline

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "prompt": self.prompt,
            "status": str(self.status),
            "adapterId": self.adapter_id,
            "createdAt": self.created_at,
            "deadline": self.deadline,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HumanRequest:
        return cls(
            request_id=data["requestId"],
            prompt=data.get("prompt", ""),
            deadline=float(data.get("deadline", 0)),
            adapter_id=data.get("adapterId", ""),
            status=HumanStatus(data.get("status", "pending")),
            created_at=float(data.get("createdAt", 0)),
        )


class HumanCoordinator(abc.ABC):
    """Suspend/resume primitive shared by every backend."""

    def __init__(self) -> None:
        self._waiters: dict[str, tuple[HumanRequest, asyncio.Future[None]]] = {}

    async def wait(
        self,
        prompt: str | None = None,
        timeout: float = 300.0,
        *,
        adapter_id: str = "",
    ) -> None:
        """Block the calling tool invocation until the step is marked done.

        Raises:
            HumanTimeoutError: when the deadline passes first.
            HumanRequiredError: when no human can be reached at all.
        """
        request = HumanRequest(
            request_id=uuid.uuid4().hex,
            prompt=prompt or DEFAULT_PROMPT,
            deadline=time.time() + timeout,
            adapter_id=adapter_id,
        )
        logger.info(
            "Human step requested (id=%s adapter=%s timeout=%ss): %s",
            request.request_id[:8],
            adapter_id or "-",
            timeout,
            request.prompt.splitlines()[0] if request.prompt else "",
        )
        await self._wait(request, timeout)
        logger.info("Human step completed (id=%s)", request.request_id[:8])

    @abc.abstractmethod
    async def _wait(self, request: HumanRequest, timeout: float) -> None:
        ...

    def pending(self) -> list[HumanRequest]:
        """Requests currently awaiting a person."""
        return [req for req, _ in self._waiters.values() if req.status == HumanStatus.PENDING]

    def complete(self, request_id: str) -> bool:
        """Mark the request with ``request_id`` completed.

        Returns False (and changes nothing) for unknown, already resolved,
        or expired ids.
        """
        entry = self._waiters.get(request_id)
        if entry is None:
            logger.debug("Ignoring completion for unknown request %s", request_id[:8])
            return False
        request, future = entry
        if future.done() or request.status != HumanStatus.PENDING or request.expired:
            return False
        request.status = HumanStatus.COMPLETED
        future.set_result(None)
        return True

    async def _await_completion(self, request: HumanRequest, timeout: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters[request.request_id] = (request, future)
        try:
            await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            raise HumanTimeoutError(
                f'wait_for_human timed out after {timeout:g}s: "{request.prompt}"'
            ) from None
        finally:
            self._waiters.pop(request.request_id, None)


class UnattendedCoordinator(HumanCoordinator):
    """Headless/CI mode: a human step can never be satisfied."""

    async def _wait(self, request: HumanRequest, timeout: float) -> None:
        raise HumanRequiredError(request.prompt)


class StoreCoordinator(HumanCoordinator):
    """Publish requests to a ``SharedStore`` and resume on a matching completion.

    A UI surface lists ``pending()`` and either calls ``complete(id)`` or
    writes the request back with ``status: completed``. Writes carrying a
    different id than the key they are stored under are ignored.
    """

    def __init__(self, store: SharedStore) -> None:
        super().__init__()
        self._store = store

    @staticmethod
    def key_for(request_id: str) -> str:
        return f"{HUMAN_REQUEST_PREFIX}{request_id}"

    async def _wait(self, request: HumanRequest, timeout: float) -> None:
        key = self.key_for(request.request_id)

        def _on_change(changed_key: str, value: Any) -> None:
            if changed_key != key or not isinstance(value, dict):
                return
            if value.get("requestId") != request.request_id:
                return
            if value.get("status") == HumanStatus.COMPLETED:
                self.complete(request.request_id)

        unsubscribe = self._store.subscribe(_on_change)
        self._store.set(key, request.to_dict())
        try:
            await self._await_completion(request, timeout)
        finally:
            unsubscribe()
            self._store.remove(key)

    def published(self) -> list[HumanRequest]:
        """Pending requests as visible in the shared store."""
        return [
            HumanRequest.from_dict(v)
            for v in self._store.items(HUMAN_REQUEST_PREFIX).values()
            if isinstance(v, dict) and v.get("status") == HumanStatus.PENDING
        ]


def _read_terminal_line() -> str:
    try:
        with open("/dev/tty", encoding="utf-8") as tty:
            return tty.readline()
    except OSError:
        return sys.stdin.readline()


class TerminalCoordinator(HumanCoordinator):
    """Print the prompt to stderr and wait for Enter on the controlling terminal.

    A single daemon thread reads at most one line at a time. Each line
    completes the oldest request still pending when it arrives, so a
    line typed after a timeout answers the next request instead of being
    lost, and a blocked read never holds up interpreter shutdown.
    """

    def __init__(
        self,
        read_line: Callable[[], str] | None = None,
        console: Console | None = None,
    ) -> None:
        super().__init__()
        self._read_line = read_line or _read_terminal_line
        self._console = console or Console(stderr=True)
        self._reader_loop: asyncio.AbstractEventLoop | None = None

    async def _wait(self, request: HumanRequest, timeout: float) -> None:
        self._console.print(
            Panel(
                f"{request.prompt}\n\n[dim]Press Enter when done "
                f"(times out in {timeout:g}s)[/dim]",
                title="[bold yellow]Human step required[/bold yellow]",
                border_style="yellow",
            )
        )
        self._ensure_reader()
        await self._await_completion(request, timeout)

    def _ensure_reader(self) -> None:
        loop = asyncio.get_running_loop()
        if self._reader_loop is loop:
            return
        self._reader_loop = loop
        threading.Thread(
            target=self._read_into,
            args=(loop,),
            name="civic-mcp-terminal",
            daemon=True,
        ).start()

    def _read_into(self, loop: asyncio.AbstractEventLoop) -> None:
        line = self._read_line()
        try:
            loop.call_soon_threadsafe(self._on_line, loop)
        except RuntimeError:
            logger.debug("Terminal line arrived after its event loop closed: %r", line)

    def _on_line(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._reader_loop is loop:
            self._reader_loop = None
        if not any(self.complete(req.request_id) for req in self.pending()):
            logger.debug("Ignoring terminal line with no pending human request")
        if self.pending():
            self._ensure_reader()


_PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Civic-MCP: Human Step Required</title>
  <style>
    body {{ font-family: system-ui, sans-serif; max-width: 640px; margin: 60px auto; padding: 0 24px; }}
    h1 {{ font-size: 1.4rem; color: #1d4ed8; }}
    pre {{ background: #f1f5f9; border-radius: 8px; padding: 16px; white-space: pre-wrap; }}
    button {{ background: #16a34a; color: #fff; border: none; border-radius: 8px;
              padding: 12px 32px; font-size: 1rem; cursor: pointer; margin-top: 24px; }}
    p.note {{ color: #64748b; font-size: .85rem; margin-top: 16px; }}
  </style>
</head>
<body>
  <h1>Civic-MCP: Human Step Required</h1>
  <p>The AI agent has paused and is waiting for you to complete a step in the browser:</p>
  <pre>{prompt}</pre>
  <button id="done" onclick="complete()">Done, continue</button>
  <p class="note">Clicking "Done" resumes the agent. This tab can be closed after.</p>
  <script>
    function complete() {{
      const btn = document.getElementById('done');
      btn.disabled = true;
      btn.textContent = 'Resuming...';
      const ws = new WebSocket('ws://' + location.host + '/ack');
      ws.onopen = () => ws.send(JSON.stringify({{ requestId: {request_id}, action: 'done' }}));
    }}
  </script>
</body>
</html>
"""


class ListenerCoordinator(HumanCoordinator):
    """Serve the prompt on a throwaway local listener until it is acknowledged.

    ``GET /`` returns the prompt page; the page's button opens a WebSocket
    and sends ``{"requestId": ..., "action": "done"}``. The listener is torn
    down once the request completes or times out.
    """

    def __init__(self, host: str = "127.0.0.1", console: Console | None = None) -> None:
        super().__init__()
        self._host = host
        self._console = console or Console(stderr=True)
        self.urls: dict[str, str] = {}

    async def _wait(self, request: HumanRequest, timeout: float) -> None:
        from websockets.asyncio.server import serve

        server = await serve(
            self._handle_ack,
            self._host,
            0,
            process_request=self._page_responder(request),
        )
        port = server.sockets[0].getsockname()[1]
        url = f"http://{self._host}:{port}/"
        self.urls[request.request_id] = url
        self._console.print(
            f"\n[bold yellow][civic-mcp] Human step required[/bold yellow]; "
            f"open this URL in your browser:\n  {url}\n"
            f"  Prompt: {request.prompt.splitlines()[0] if request.prompt else ''}\n"
        )
        try:
            await self._await_completion(request, timeout)
        finally:
            self.urls.pop(request.request_id, None)
            server.close()
            await server.wait_closed()

    def _page_responder(self, request: HumanRequest) -> Callable[[Any, Any], Any]:
        from websockets.datastructures import Headers
        from websockets.http11 import Response

        body = _PAGE_TEMPLATE.format(
            prompt=html.escape(request.prompt),
            request_id=json.dumps(request.request_id),
        ).encode("utf-8")

        def _respond(connection: Any, http_request: Any) -> Response | None:
            if http_request.headers.get("Upgrade", "").lower() == "websocket":
                return None
            headers = Headers(
                [
                    ("Content-Type", "text/html; charset=utf-8"),
                    ("Content-Length", str(len(body))),
                    ("Connection", "close"),
                ]
            )
            return Response(200, "OK", headers, body)

        return _respond

    async def _handle_ack(self, connection: Any) -> None:
        async for raw in connection:
            try:
                msg = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                continue
            if not isinstance(msg, dict) or msg.get("action") != "done":
                continue
            if self.complete(str(msg.get("requestId", ""))):
                await connection.send(json.dumps({"ok": True}))
                return
            await connection.send(
                json.dumps({"ok": False, "error": "Unknown, resolved or expired request"})
            )


def build_coordinator(
    mode: str,
    *,
    headed: bool = False,
    store: SharedStore | None = None,
    unattended_default: str = "listener",
    listener_host: str = "127.0.0.1",
) -> HumanCoordinator:
    """Create the coordinator for ``mode`` (auto|store|terminal|listener|unattended).

    ``auto`` picks the terminal when a headed browser is on screen and
    ``unattended_default`` otherwise.
    """
    if mode == "auto":
        mode = "terminal" if headed else unattended_default
    if mode == "store":
        return StoreCoordinator(store or SharedStore())
    if mode == "terminal":
        return TerminalCoordinator()
    if mode == "listener":
        return ListenerCoordinator(host=listener_host)
    if mode == "unattended":
        return UnattendedCoordinator()
    raise ValueError(f"Unknown human mode: {mode!r}")
