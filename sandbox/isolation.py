"""Process isolation for scripted adapters.

Each scripted adapter runs in its own Python child process
(``python -m sandbox.worker <adapter.py>``) and talks to the host over
newline-delimited JSON on stdin/stdout. The child never receives a page,
a socket, or a file handle: every page or storage operation is sent back
to the host as a ``capability`` request and executed against the
``CapabilityContext`` bound to that call.

Messages::

    child -> host  {"id": null, "result": {"ready": true, "adapter": {...}}}
    host  -> child {"id": 1, "method": "execute", "params": {"call": 1, ...}}
    child -> host  {"id": "c1", "method": "capability", "params": {...}}
    host  -> child {"id": "c1", "result": {"value": ..., "url": "..."}}
    child -> host  {"method": "notify", "params": {"call": 1, ...}}
    child -> host  {"id": 1, "result": {...}} | {"id": 1, "error": {...}}
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from sandbox.capability import CapabilityContext
from sandbox.errors import (
    AdapterLoadError,
    HumanRequiredError,
    SandboxError,
    rebuild_error,
    serialize_error,
)
from sandbox.worker import DENIED_PATHS_ENV

logger = logging.getLogger(__name__)

PAGE_OPS = frozenset(
    {
        "navigate",
        "fill_field",
        "select_option",
        "click",
        "get_text",
        "get_value",
        "get_attribute",
        "exists",
        "wait_for_selector",
        "wait_for_selector_gone",
        "wait_for_human",
    }
)
STORAGE_OPS = frozenset({"get", "set", "delete", "clear"})
NOTIFY_LEVELS = frozenset({"info", "warn", "error"})

_STREAM_LIMIT = 16 * 1024 * 1024

# Paths the child may never open, even inside an otherwise readable root.
DEFAULT_DENIED_PATHS = ("~/.civic-mcp",)

_SENSITIVE_ENV_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"SECRET", re.IGNORECASE),
    re.compile(r"TOKEN", re.IGNORECASE),
    re.compile(r"API[_]?KEY", re.IGNORECASE),
    re.compile(r"PASSWORD", re.IGNORECASE),
    re.compile(r"CREDENTIAL", re.IGNORECASE),
    re.compile(r"PRIVATE[_]?KEY", re.IGNORECASE),
    re.compile(r"^AWS_", re.IGNORECASE),
]


def build_child_env(
    base: dict[str, str] | None = None,
    *,
    strip: bool = True,
    denied_paths: Iterable[str | Path] = (),
) -> dict[str, str]:
    """Environment for an adapter child process, with secrets removed."""
    env: dict[str, str] = {}
    for key, value in (os.environ if base is None else base).items():
        if strip and any(p.search(key) for p in _SENSITIVE_ENV_PATTERNS):
            logger.debug("Stripped sensitive env var %s from adapter process", key)
            continue
        env[key] = value

    project_root = str(Path(__file__).resolve().parent.parent)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = project_root + (os.pathsep + existing if existing else "")
    env["PYTHONUNBUFFERED"] = "1"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    env["PYTHONIOENCODING"] = "utf-8"
    denied = dict.fromkeys(
        str(Path(p).expanduser().resolve()) for p in (*DEFAULT_DENIED_PATHS, *denied_paths)
    )
    env[DENIED_PATHS_ENV] = os.pathsep.join(denied)
    return env


class AdapterProcess:
    """Host side of one isolated scripted adapter."""

    def __init__(
        self,
        adapter_file: str | Path,
        *,
        python_bin: str | None = None,
        startup_timeout: float = 30.0,
        call_timeout: float | None = None,
        strip_env: bool = True,
        denied_paths: Iterable[str | Path] = (),
    ) -> None:
        self._adapter_file = Path(adapter_file).resolve()
        self._python_bin = python_bin or sys.executable
        self._startup_timeout = startup_timeout
        self._call_timeout = call_timeout or None
        self._strip_env = strip_env
        self._denied_paths = list(denied_paths)

        self._process: asyncio.subprocess.Process | None = None
        self._seq = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._contexts: dict[int, CapabilityContext] = {}
        self._human_required: dict[int, HumanRequiredError] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._load_error: str | None = None

        self.adapter_id = ""
        self.has_init = False
        self.tools: list[dict[str, Any]] = []

    @property
    def is_alive(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and self._ready.is_set()
            and self._load_error is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        """Spawn the child and wait until it has loaded the adapter.

        Raises:
            AdapterLoadError: if the adapter fails to import or has the wrong shape.
            SandboxError: if the child does not come up in time.
        """
        if self.is_alive:
            return

        self._ready.clear()
        self._load_error = None
        self._process = await asyncio.create_subprocess_exec(
            self._python_bin,
            "-m",
            "sandbox.worker",
            str(self._adapter_file),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._adapter_file.parent),
            env=build_child_env(strip=self._strip_env, denied_paths=self._denied_paths),
            limit=_STREAM_LIMIT,
        )
        logger.info(
            "Adapter process started (pid=%d, file=%s)",
            self._process.pid,
            self._adapter_file,
        )

        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._stderr_loop())

        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self._startup_timeout)
        except TimeoutError:
            await self.stop()
            raise SandboxError(
                f"Adapter process for {self._adapter_file} failed to start "
                f"within {self._startup_timeout:g}s"
            ) from None

        if self._load_error is not None:
            error = self._load_error
            await self.stop()
            raise AdapterLoadError(error)

    async def stop(self) -> None:
        """Terminate the child process and fail in-flight calls."""
        if self._process and self._process.returncode is None:
            try:
                self._process.stdin.close()  # type: ignore[union-attr]
                await asyncio.wait_for(self._process.wait(), timeout=5)
            except (TimeoutError, OSError):
                self._process.kill()
                await self._process.wait()
            logger.info("Adapter process stopped (pid=%d)", self._process.pid)

        for task in (self._reader_task, self._stderr_task, *self._tasks):
            if task is not None and not task.done():
                task.cancel()
        self._reader_task = None
        self._stderr_task = None
        self._tasks.clear()
        self._process = None
        self._ready.clear()
        self._fail_pending("Adapter process stopped")

    async def init(self, context: CapabilityContext) -> None:
        """Run the adapter's one-time ``init(context)``, if it defines one."""
        if not self.has_init:
            return
        await self._call_with_context("init", {}, context)

    async def execute(
        self, tool: str, params: dict[str, Any], context: CapabilityContext
    ) -> Any:
        """Run ``tool`` in the child; returns the adapter's raw result value."""
        return await self._call_with_context("execute", {"tool": tool, "params": params}, context)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _call_with_context(
        self, method: str, params: dict[str, Any], context: CapabilityContext
    ) -> Any:
        if not self.is_alive:
            raise SandboxError(f"Adapter process for {self.adapter_id or self._adapter_file} is not running")

        self._seq += 1
        call_id = self._seq
        self._contexts[call_id] = context
        try:
            result = await self._request(
                call_id,
                method,
                {**params, "call": call_id, "url": context.page.current_url()},
            )
        finally:
            self._contexts.pop(call_id, None)
            swallowed = self._human_required.pop(call_id, None)
        if swallowed is not None:
            raise swallowed
        return result

    async def _request(self, msg_id: int, method: str, params: dict[str, Any]) -> Any:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        await self._send({"id": msg_id, "method": method, "params": params})
        try:
            return await asyncio.wait_for(future, timeout=self._call_timeout)
        except TimeoutError:
            raise SandboxError(
                f"Adapter call '{method}' timed out after {self._call_timeout:g}s"
            ) from None
        finally:
            self._pending.pop(msg_id, None)

    async def _send(self, msg: dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None:
            raise SandboxError("Adapter process is not running")
        line = json.dumps(msg, default=str) + "\n"
        async with self._write_lock:
            try:
                self._process.stdin.write(line.encode())
                await self._process.stdin.drain()
            except (ConnectionError, OSError) as e:
                raise SandboxError(f"Adapter process pipe closed: {e}") from e

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(SandboxError(reason))
        self._pending.clear()

    async def _read_loop(self) -> None:
        """Read JSON lines from the child and route them."""
        assert self._process and self._process.stdout
        try:
            while True:
                raw = await self._process.stdout.readline()
                if not raw:
                    break  # EOF, process exited

                line = raw.decode().strip()
                if not line:
                    continue

                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Adapter process sent non-JSON: %s", line[:200])
                    continue

                method = msg.get("method")
                if method == "capability":
                    task = asyncio.create_task(self._serve_capability(msg))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                    continue
                if method == "notify":
                    self._deliver_notify(msg.get("params") or {})
                    continue

                msg_id = msg.get("id")
                if msg_id is None:
                    self._handle_ready(msg)
                    continue

                future = self._pending.get(msg_id)
                if future is None or future.done():
                    continue
                if "error" in msg:
                    err = msg["error"] or {}
                    future.set_exception(
                        rebuild_error(
                            err.get("type", "AdapterRuntimeError"),
                            err.get("message", "Unknown adapter error"),
                            err.get("code"),
                        )
                    )
                else:
                    future.set_result(msg.get("result"))

        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.error("Adapter process reader crashed: %s", exc)
        finally:
            if not self._ready.is_set():
                self._load_error = self._load_error or "Adapter process exited during startup"
                self._ready.set()
            self._fail_pending("Adapter process exited")

    def _handle_ready(self, msg: dict[str, Any]) -> None:
        if "error" in msg:
            self._load_error = (msg["error"] or {}).get("message", "Adapter failed to load")
        else:
            info = (msg.get("result") or {}).get("adapter") or {}
            self.adapter_id = info.get("id", "")
            self.has_init = bool(info.get("has_init"))
            self.tools = list(info.get("tools") or [])
            logger.debug(
                "Adapter process ready (id=%s, tools=%d)", self.adapter_id, len(self.tools)
            )
        self._ready.set()

    async def _serve_capability(self, msg: dict[str, Any]) -> None:
        params = msg.get("params") or {}
        call_id = params.get("call")
        context = self._contexts.get(call_id)
        reply: dict[str, Any] = {"id": msg.get("id")}
        try:
            if context is None:
                raise SandboxError("Capability request outside of an active call")
            surface, op = params.get("surface"), params.get("op")
            if surface == "page" and op in PAGE_OPS:
                target: Any = context.page
            elif surface == "storage" and op in STORAGE_OPS:
                target = context.storage
            else:
                raise SandboxError(f"Capability {surface}.{op} is not available")
            value = await getattr(target, op)(
                *(params.get("args") or []), **(params.get("kwargs") or {})
            )
            reply["result"] = {"value": value, "url": context.page.current_url()}
        except HumanRequiredError as e:
            self._human_required[call_id] = e
            reply["error"] = serialize_error(e)
        except Exception as e:
            reply["error"] = serialize_error(e)
        if context is not None:
            reply.setdefault("result", {"url": context.page.current_url()})
        try:
            await self._send(reply)
        except SandboxError as e:
            logger.debug("Could not answer capability request: %s", e)

    def _deliver_notify(self, params: dict[str, Any]) -> None:
        context = self._contexts.get(params.get("call"))
        level = params.get("level")
        if context is None or level not in NOTIFY_LEVELS:
            return
        getattr(context.notify, level)(str(params.get("message", "")))

    async def _stderr_loop(self) -> None:
        """Forward adapter stderr (including its prints) to logging."""
        assert self._process and self._process.stderr
        try:
            while True:
                raw = await self._process.stderr.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip()
                if line:
                    logger.debug("[%s] %s", self.adapter_id or self._adapter_file.parent.name, line)
        except (asyncio.CancelledError, Exception):
            pass
