"""Child-process entry point for a scripted adapter.

Run as ``python -m sandbox.worker <path/to/adapter.py>`` by
``sandbox.isolation.AdapterProcess``. The real stdout is reserved for the
protocol; anything the adapter prints goes to stderr. Once the pipes are
set up an audit hook denies network, process, native-library and
file-write operations for the rest of the process lifetime. Reads are
limited to the adapter's own folder and the interpreter's import paths,
and never reach the paths listed in ``CIVIC_MCP_SANDBOX_DENY``.
"""

from __future__ import annotations

import asyncio
import importlib.util
import json
import os
import site
import sys
import sysconfig
import traceback
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, TextIO

from sandbox.errors import (
    AdapterLoadError,
    SandboxError,
    UnknownToolError,
    rebuild_error,
    serialize_error,
)
from sandbox.sdk import Adapter
from sandbox.utils import UtilsAPI

_STREAM_LIMIT = 16 * 1024 * 1024

_DENIED_EVENTS = frozenset(
    {
        "socket.bind",
        "socket.connect",
        "socket.getaddrinfo",
        "socket.gethostbyname",
        "socket.sendto",
        "subprocess.Popen",
        "os.system",
        "os.exec",
        "os.spawn",
        "os.posix_spawn",
        "os.fork",
        "os.forkpty",
        "os.kill",
        "os.remove",
        "os.rename",
        "os.rmdir",
        "os.mkdir",
        "os.symlink",
        "os.link",
        "os.truncate",
        "os.chmod",
        "os.chown",
        "shutil.rmtree",
        "ctypes.dlopen",
    }
)
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC
_PACKAGE_DIR = str(Path(__file__).resolve().parent)
DENIED_PATHS_ENV = "CIVIC_MCP_SANDBOX_DENY"


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def read_roots(adapter_path: Path) -> tuple[str, ...]:
    """Directories the adapter may read: its own folder and the interpreter's imports."""
    roots = {
        str(adapter_path.parent),
        _PACKAGE_DIR,
        sys.prefix,
        sys.base_prefix,
        sys.exec_prefix,
        sys.base_exec_prefix,
        *sysconfig.get_paths().values(),
        *site.getsitepackages(),
    }
    if site.ENABLE_USER_SITE:
        roots.add(site.getusersitepackages())
    return tuple(sorted({os.path.realpath(r) for r in roots if r}))


def denied_paths(environ: Mapping[str, str] | None = None) -> tuple[str, ...]:
    raw = (os.environ if environ is None else environ).get(DENIED_PATHS_ENV, "")
    return tuple(os.path.realpath(p) for p in raw.split(os.pathsep) if p)


def make_audit_hook(
    readable: Sequence[str] | None = None, denied: Sequence[str] = ()
) -> Callable[[str, tuple[Any, ...]], None]:
    """Build the hook. ``readable=None`` leaves reads unrestricted.

    The policy is captured here so adapter code cannot rebind it later.
    """
    denied_events = _DENIED_EVENTS
    roots = None if readable is None else tuple(readable)
    blocked = tuple(denied)

    def _audit(event: str, args: tuple[Any, ...]) -> None:
        if event in denied_events:
            raise PermissionError(f"Sandboxed adapter may not perform {event}")
        if event != "open" or not args or isinstance(args[0], int):
            return
        if len(args) >= 3:
            mode, flags = args[1], args[2]
            writes = (
                any(c in mode for c in "wax+") if isinstance(mode, str) else bool(flags & _WRITE_FLAGS)
            )
            if writes:
                raise PermissionError(f"Sandboxed adapter may not write to {args[0]!r}")
        if roots is None:
            return
        path = os.path.realpath(os.fsdecode(args[0]))
        if any(_within(path, d) for d in blocked) or not any(_within(path, r) for r in roots):
            raise PermissionError(f"Sandboxed adapter may not read {args[0]!r}")

    return _audit


def install_audit_hook(
    readable: Sequence[str] | None = None, denied: Sequence[str] = ()
) -> None:
    """Deny escape hatches around the capability API. Cannot be undone."""
    sys.addaudithook(make_audit_hook(readable, denied))


# ---------------------------------------------------------------------------
# Protocol channel
# ---------------------------------------------------------------------------


class Channel:
    """The child's end of the newline-delimited JSON protocol."""

    def __init__(self, out: TextIO) -> None:
        self._out = out
        self._seq = 0
        self._pending: dict[str, asyncio.Future[Any]] = {}

    def send(self, msg: dict[str, Any]) -> None:
        self._out.write(json.dumps(msg, default=str) + "\n")
        self._out.flush()

    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        self._seq += 1
        msg_id = f"c{self._seq}"
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            self.send({"id": msg_id, "method": method, "params": params})
            return await future
        finally:
            self._pending.pop(msg_id, None)

    def resolve(self, msg: dict[str, Any]) -> None:
        future = self._pending.get(str(msg.get("id")))
        if future is not None and not future.done():
            future.set_result(msg)

    def close(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(SandboxError("Host closed the channel"))
        self._pending.clear()


# ---------------------------------------------------------------------------
# Remote capability surfaces
# ---------------------------------------------------------------------------


class _CallScope:
    """Shared per-call state: the channel, the call id and the last known URL."""

    def __init__(self, channel: Channel, call_id: int, url: str) -> None:
        self.channel = channel
        self.call_id = call_id
        self.url = url

    async def invoke(self, surface: str, op: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        reply = await self.channel.request(
            "capability",
            {
                "call": self.call_id,
                "surface": surface,
                "op": op,
                "args": list(args),
                "kwargs": kwargs,
            },
        )
        result = reply.get("result") or {}
        if "url" in result:
            self.url = result["url"]
        if "error" in reply:
            err = reply["error"] or {}
            raise rebuild_error(err.get("type", ""), err.get("message", ""), err.get("code"))
        return result.get("value")


def _remote(surface: str, op: str) -> Any:
    async def method(self: Any, *args: Any, **kwargs: Any) -> Any:
        return await self._scope.invoke(surface, op, args, kwargs)

    method.__name__ = op
    return method


class RemotePage:
    def __init__(self, scope: _CallScope) -> None:
        self._scope = scope

    navigate = _remote("page", "navigate")
    fill_field = _remote("page", "fill_field")
    select_option = _remote("page", "select_option")
    click = _remote("page", "click")
    get_text = _remote("page", "get_text")
    get_value = _remote("page", "get_value")
    get_attribute = _remote("page", "get_attribute")
    exists = _remote("page", "exists")
    wait_for_selector = _remote("page", "wait_for_selector")
    wait_for_selector_gone = _remote("page", "wait_for_selector_gone")
    wait_for_human = _remote("page", "wait_for_human")

    def current_url(self) -> str:
        return self._scope.url


class RemoteStorage:
    def __init__(self, scope: _CallScope) -> None:
        self._scope = scope

    get = _remote("storage", "get")
    set = _remote("storage", "set")
    delete = _remote("storage", "delete")
    clear = _remote("storage", "clear")


class RemoteNotify:
    def __init__(self, scope: _CallScope) -> None:
        self._scope = scope

    def _send(self, level: str, message: Any) -> None:
        try:
            self._scope.channel.send(
                {
                    "method": "notify",
                    "params": {"call": self._scope.call_id, "level": level, "message": str(message)},
                }
            )
        except Exception:
            traceback.print_exc()

    def info(self, message: str) -> None:
        self._send("info", message)

    def warn(self, message: str) -> None:
        self._send("warn", message)

    def error(self, message: str) -> None:
        self._send("error", message)


class RemoteContext:
    """What adapter code sees as ``context``."""

    def __init__(self, channel: Channel, call_id: int, url: str) -> None:
        scope = _CallScope(channel, call_id, url)
        self.page = RemotePage(scope)
        self.storage = RemoteStorage(scope)
        self.notify = RemoteNotify(scope)
        self.utils = UtilsAPI()


# ---------------------------------------------------------------------------
# Adapter loading and request handling
# ---------------------------------------------------------------------------


def load_adapter(path: Path) -> Adapter:
    """Import ``path`` and return its module-level ``adapter``.

    Only the shape is checked: an identifier string and a non-empty tool list.
    """
    spec = importlib.util.spec_from_file_location("civic_mcp_adapter", path)
    if spec is None or spec.loader is None:
        raise AdapterLoadError(f"Cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise AdapterLoadError(f"Failed to import {path.name}: {type(e).__name__}: {e}") from e

    adapter = getattr(module, "adapter", None)
    adapter_id = getattr(adapter, "id", None)
    tools = getattr(adapter, "tools", None)
    if not isinstance(adapter_id, str) or not adapter_id:
        raise AdapterLoadError(f"{path.name}: adapter must expose an 'id' string")
    if not isinstance(tools, (list, tuple)) or not tools:
        raise AdapterLoadError(f"{path.name}: adapter must expose a non-empty 'tools' list")
    for tool in tools:
        if not isinstance(getattr(tool, "name", None), str) or not callable(
            getattr(tool, "execute", None)
        ):
            raise AdapterLoadError(f"{path.name}: every tool needs a name and an execute()")
    return adapter


def describe(adapter: Adapter) -> dict[str, Any]:
    return {
        "id": adapter.id,
        "has_init": adapter.init is not None,
        "tools": [
            {
                "name": t.name,
                "description": getattr(t, "description", ""),
                "input_schema": getattr(t, "input_schema", None)
                or {"type": "object", "properties": {}},
            }
            for t in adapter.tools
        ],
    }


async def _handle(adapter: Adapter, channel: Channel, msg: dict[str, Any]) -> None:
    method = msg.get("method")
    params = msg.get("params") or {}
    reply: dict[str, Any] = {"id": msg.get("id")}
    try:
        context = RemoteContext(channel, params.get("call", 0), params.get("url", ""))
        if method == "init":
            if adapter.init is not None:
                await adapter.init(context)
            reply["result"] = None
        elif method == "execute":
            name = params.get("tool")
            tool = next((t for t in adapter.tools if t.name == name), None)
            if tool is None:
                raise UnknownToolError(f'Adapter "{adapter.id}" has no tool "{name}"')
            reply["result"] = await tool.execute(params.get("params") or {}, context)
        else:
            raise SandboxError(f"Unknown method: {method}")
    except Exception as e:
        traceback.print_exc()
        reply["error"] = serialize_error(e)
    channel.send(reply)


async def _main(adapter_path: Path, out: TextIO) -> int:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=_STREAM_LIMIT)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    channel = Channel(out)

    install_audit_hook(read_roots(adapter_path), denied_paths())

    try:
        adapter = load_adapter(adapter_path)
    except AdapterLoadError as e:
        channel.send({"id": None, "error": serialize_error(e)})
        return 1

    channel.send({"id": None, "result": {"ready": True, "pid": os.getpid(), "adapter": describe(adapter)}})

    tasks: set[asyncio.Task[None]] = set()
    while True:
        raw = await reader.readline()
        if not raw:
            break
        line = raw.decode().strip()
        if not line:
            continue
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            print(f"worker: ignoring non-JSON line: {line[:200]}", file=sys.stderr)
            continue
        if "method" in msg:
            task = asyncio.create_task(_handle(adapter, channel, msg))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
        else:
            channel.resolve(msg)

    channel.close()
    for task in tasks:
        task.cancel()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m sandbox.worker <adapter.py>", file=sys.stderr)
        return 2

    sys.dont_write_bytecode = True
    # fd 1 becomes stderr; the protocol keeps a private duplicate of the real stdout.
    out = os.fdopen(os.dup(1), "w", encoding="utf-8", buffering=1)
    os.dup2(2, 1)
    sys.stdout = sys.stderr

    return asyncio.run(_main(Path(args[0]).resolve(), out))


if __name__ == "__main__":
    sys.exit(main())
