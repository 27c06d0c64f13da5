"""Tests for sandbox/human.py: one request, one completion, bounded waits."""

from __future__ import annotations

import asyncio
import io
import json
import queue
import threading
import time

import pytest
from rich.console import Console
from websockets.asyncio.client import connect

from sandbox.errors import HumanRequiredError, HumanTimeoutError
from sandbox.human import (
    HUMAN_REQUEST_PREFIX,
    HumanRequest,
    HumanStatus,
    ListenerCoordinator,
    StoreCoordinator,
    TerminalCoordinator,
    UnattendedCoordinator,
    build_coordinator,
)
from sandbox.storage import SharedStore


def _quiet_console() -> Console:
    return Console(file=io.StringIO(), width=100)


async def _first_pending(coordinator: StoreCoordinator | ListenerCoordinator) -> HumanRequest:
    for _ in range(200):
        pending = coordinator.pending()
        if pending:
            return pending[0]
        await asyncio.sleep(0.01)
    raise AssertionError("no pending human request appeared")


class TestHumanRequest:
    def test_dict_round_trip(self) -> None:
        req = HumanRequest("abc", "Solve it", deadline=time.time() + 60, adapter_id="gov.a")
        data = req.to_dict()
        assert data["requestId"] == "abc"
        assert data["status"] == "pending"
        assert HumanRequest.from_dict(data) == req

    def test_expired(self) -> None:
        assert HumanRequest("a", "p", deadline=time.time() - 1).expired


class TestUnattended:
    @pytest.mark.asyncio
    async def test_fails_fast(self) -> None:
        start = time.monotonic()
        with pytest.raises(HumanRequiredError) as exc_info:
            await UnattendedCoordinator().wait("Solve the CAPTCHA", timeout=60)
        assert exc_info.value.prompt == "Solve the CAPTCHA"
        assert time.monotonic() - start < 1


class TestStoreCoordinator:
    @pytest.mark.asyncio
    async def test_publishes_and_resumes_on_complete(self) -> None:
        store = SharedStore()
        coordinator = StoreCoordinator(store)
        waiter = asyncio.create_task(coordinator.wait("Upload ID", timeout=5, adapter_id="gov.a"))

        request = await _first_pending(coordinator)
        published = coordinator.published()
        assert [r.request_id for r in published] == [request.request_id]
        assert published[0].prompt == "Upload ID"
        assert published[0].adapter_id == "gov.a"

        assert coordinator.complete(request.request_id)
        await asyncio.wait_for(waiter, 1)
        assert store.items(HUMAN_REQUEST_PREFIX) == {}

    @pytest.mark.asyncio
    async def test_resumes_on_store_write(self) -> None:
        store = SharedStore()
        coordinator = StoreCoordinator(store)
        waiter = asyncio.create_task(coordinator.wait("Sign in", timeout=5))
        request = await _first_pending(coordinator)

        key = StoreCoordinator.key_for(request.request_id)
        record = store.get(key)
        record["status"] = "completed"
        store.set(key, record)
        await asyncio.wait_for(waiter, 1)

    @pytest.mark.asyncio
    async def test_mismatched_write_is_ignored(self) -> None:
        store = SharedStore()
        coordinator = StoreCoordinator(store)
        waiter = asyncio.create_task(coordinator.wait("Sign in", timeout=0.3))
        request = await _first_pending(coordinator)

        key = StoreCoordinator.key_for(request.request_id)
        store.set(key, {"requestId": "someone-else", "status": "completed"})
        assert not coordinator.complete("someone-else")

        with pytest.raises(HumanTimeoutError, match="timed out"):
            await waiter

    @pytest.mark.asyncio
    async def test_two_requests_complete_independently(self) -> None:
        coordinator = StoreCoordinator(SharedStore())
        first = asyncio.create_task(coordinator.wait("first", timeout=5))
        second = asyncio.create_task(coordinator.wait("second", timeout=5))
        for _ in range(200):
            if len(coordinator.pending()) == 2:
                break
            await asyncio.sleep(0.01)
        by_prompt = {r.prompt: r for r in coordinator.pending()}

        assert coordinator.complete(by_prompt["second"].request_id)
        await asyncio.wait_for(second, 1)
        assert not first.done()
        assert not coordinator.complete(by_prompt["second"].request_id)

        coordinator.complete(by_prompt["first"].request_id)
        await asyncio.wait_for(first, 1)

    @pytest.mark.asyncio
    async def test_timeout_then_late_completion_is_refused(self) -> None:
        coordinator = StoreCoordinator(SharedStore())
        waiter = asyncio.create_task(coordinator.wait("late", timeout=0.1))
        request = await _first_pending(coordinator)
        with pytest.raises(HumanTimeoutError):
            await waiter
        assert not coordinator.complete(request.request_id)
        assert coordinator.pending() == []


class TestTerminalCoordinator:
    @pytest.mark.asyncio
    async def test_enter_completes(self) -> None:
        lines: list[str] = []

        def _read() -> str:
            lines.append("read")
            return "\n"

        console = _quiet_console()
        coordinator = TerminalCoordinator(read_line=_read, console=console)
        await coordinator.wait("Solve the CAPTCHA", timeout=5)
        assert lines == ["read"]
        assert "Solve the CAPTCHA" in console.file.getvalue()  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_times_out(self) -> None:
        def _slow() -> str:
            time.sleep(0.5)
            return "\n"

        coordinator = TerminalCoordinator(read_line=_slow, console=_quiet_console())
        with pytest.raises(HumanTimeoutError, match="timed out after 0.05s"):
            await coordinator.wait("Too slow", timeout=0.05)

    @pytest.mark.asyncio
    async def test_line_after_timeout_answers_next_request(self) -> None:
        lines: queue.Queue[str] = queue.Queue()
        coordinator = TerminalCoordinator(read_line=lines.get, console=_quiet_console())
        with pytest.raises(HumanTimeoutError):
            await coordinator.wait("first", timeout=0.1)

        waiter = asyncio.create_task(coordinator.wait("second", timeout=2))
        await asyncio.sleep(0.05)
        lines.put("\n")
        await asyncio.wait_for(waiter, timeout=3)
        assert coordinator.pending() == []

    @pytest.mark.asyncio
    async def test_reader_thread_is_daemon(self) -> None:
        lines: queue.Queue[str] = queue.Queue()
        coordinator = TerminalCoordinator(read_line=lines.get, console=_quiet_console())
        with pytest.raises(HumanTimeoutError):
            await coordinator.wait("nobody home", timeout=0.05)
        readers = [t for t in threading.enumerate() if t.name == "civic-mcp-terminal"]
        assert readers
        assert all(t.daemon for t in readers)
        lines.put("\n")


class TestListenerCoordinator:
    @pytest.mark.asyncio
    async def test_serves_page_and_accepts_ack(self) -> None:
        coordinator = ListenerCoordinator(console=_quiet_console())
        waiter = asyncio.create_task(coordinator.wait("Verify <you>", timeout=5))
        request = await _first_pending(coordinator)
        url = coordinator.urls[request.request_id]

        reader, writer = await asyncio.open_connection(*url[len("http://"):].rstrip("/").split(":"))
        writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        await writer.drain()
        page = (await reader.read()).decode()
        writer.close()
        assert "200 OK" in page
        assert "Verify &lt;you&gt;" in page
        assert request.request_id in page

        ws_url = url.replace("http://", "ws://") + "ack"
        async with connect(ws_url) as ws:
            await ws.send(json.dumps({"requestId": "wrong", "action": "done"}))
            assert json.loads(await ws.recv())["ok"] is False
            await ws.send(json.dumps({"requestId": request.request_id, "action": "done"}))
            assert json.loads(await ws.recv()) == {"ok": True}

        await asyncio.wait_for(waiter, 2)
        assert coordinator.urls == {}

    @pytest.mark.asyncio
    async def test_times_out_and_closes(self) -> None:
        coordinator = ListenerCoordinator(console=_quiet_console())
        with pytest.raises(HumanTimeoutError):
            await coordinator.wait("nobody home", timeout=0.1)
        assert coordinator.urls == {}


class TestBuildCoordinator:
    def test_auto_headed_is_terminal(self) -> None:
        assert isinstance(build_coordinator("auto", headed=True), TerminalCoordinator)

    def test_auto_headless_uses_default(self) -> None:
        assert isinstance(build_coordinator("auto"), ListenerCoordinator)
        assert isinstance(
            build_coordinator("auto", unattended_default="unattended"), UnattendedCoordinator
        )

    def test_store_uses_given_store(self) -> None:
        store = SharedStore()
        coordinator = build_coordinator("store", store=store)
        assert isinstance(coordinator, StoreCoordinator)

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            build_coordinator("pager")


def test_status_values() -> None:
    assert HumanStatus.PENDING == "pending"
    assert HumanStatus.COMPLETED == "completed"
