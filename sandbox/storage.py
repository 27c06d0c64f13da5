"""Adapter-scoped key/value storage with a fixed per-namespace byte quota.

``ScopedStorage`` is the storage surface handed to adapters. It always
writes through a ``StorageBackend``, which decides where records live:

- ``MemoryBackend``: process memory (test harness)
- ``JsonFileBackend``: one JSON file per adapter (standalone server)
- ``SharedStoreBackend``: prefixed keys in a ``SharedStore`` (in-page host)

The backend owns one ``asyncio.Lock`` per namespace, so the quota check
and the write happen atomically even when calls for the same adapter run
concurrently.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import json
import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from sandbox.errors import PermissionDeniedError, StorageQuotaError, StorageValueError

logger = logging.getLogger(__name__)

MAX_STORAGE_BYTES = 100 * 1024
PLUGIN_KEY_PREFIX = "civic-mcp:plugin:"


def json_byte_size(value: Any) -> int:
    """Size of ``value`` serialised as compact UTF-8 JSON."""
    return len(
        json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    )


def _json_copy(value: Any) -> Any:
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as e:
        raise StorageValueError(f"Value is not JSON-serialisable: {e}") from e


# ---------------------------------------------------------------------------
# Shared observable store
# ---------------------------------------------------------------------------

Listener = Callable[[str, Any], None]


class SharedStore:
    """In-process key -> JSON value store observed by subscribers.

    Plays the role of the extension's shared local storage: adapter
    records, pending human requests, and anything a UI surface watches
    live in one key space. Subscribers are notified synchronously on every
    change (``value`` is ``None`` on removal).
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._listeners: list[Listener] = []

    def get(self, key: str) -> Any:
        value = self._data.get(key)
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = _json_copy(value)
        self._emit(key, self.get(key))

    def remove(self, *keys: str) -> None:
        for key in keys:
            if self._data.pop(key, None) is not None:
                self._emit(key, None)

    def items(self, prefix: str = "") -> dict[str, Any]:
        return {
            k: copy.deepcopy(v) for k, v in self._data.items() if k.startswith(prefix)
        }

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, key: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                logger.exception("SharedStore listener failed for key %s", key)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class StorageBackend(abc.ABC):
    """Persistence for whole namespaces. Subclasses implement load/save."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, namespace: str) -> asyncio.Lock:
        lock = self._locks.get(namespace)
        if lock is None:
            lock = self._locks[namespace] = asyncio.Lock()
        return lock

    @abc.abstractmethod
    async def load(self, namespace: str) -> dict[str, Any]:
        """Return every record in ``namespace`` (a fresh dict the caller may mutate)."""
        ...

    @abc.abstractmethod
    async def save(self, namespace: str, records: dict[str, Any]) -> None:
        """Replace the contents of ``namespace`` with ``records``."""
        ...


class MemoryBackend(StorageBackend):
    def __init__(self) -> None:
        super().__init__()
        self._namespaces: dict[str, dict[str, Any]] = {}

    async def load(self, namespace: str) -> dict[str, Any]:
        return copy.deepcopy(self._namespaces.get(namespace, {}))

    async def save(self, namespace: str, records: dict[str, Any]) -> None:
        self._namespaces[namespace] = copy.deepcopy(records)


class JsonFileBackend(StorageBackend):
    """One ``<storage_dir>/<adapter id>.json`` file per namespace."""

    def __init__(self, storage_dir: Path | str) -> None:
        super().__init__()
        self._dir = Path(storage_dir).expanduser()

    @property
    def storage_dir(self) -> Path:
        return self._dir

    def path_for(self, namespace: str) -> Path:
        safe = re.sub(r"[^a-zA-Z0-9.\-]", "_", namespace)
        return self._dir / f"{safe}.json"

    async def load(self, namespace: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._read, self.path_for(namespace))

    async def save(self, namespace: str, records: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self.path_for(namespace), records)

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable storage file %s, treating as empty: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, path: Path, records: dict[str, Any]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)


class SharedStoreBackend(StorageBackend):
    """Records live in a ``SharedStore`` under ``civic-mcp:plugin:<id>:<key>``."""

    def __init__(self, store: SharedStore) -> None:
        super().__init__()
        self._store = store

    @staticmethod
    def prefix(namespace: str) -> str:
        return f"{PLUGIN_KEY_PREFIX}{namespace}:"

    async def load(self, namespace: str) -> dict[str, Any]:
        prefix = self.prefix(namespace)
        return {k[len(prefix):]: v for k, v in self._store.items(prefix).items()}

    async def save(self, namespace: str, records: dict[str, Any]) -> None:
        prefix = self.prefix(namespace)
        stale = [k for k in self._store.items(prefix) if k[len(prefix):] not in records]
        if stale:
            self._store.remove(*stale)
        for key, value in records.items():
            self._store.set(prefix + key, value)


# ---------------------------------------------------------------------------
# Storage surface
# ---------------------------------------------------------------------------


class ScopedStorage:
    """Storage surface bound to one adapter namespace.

    The adapter never sees or chooses its namespace; every key it passes is
    resolved inside the namespace given here.
    """

    def __init__(
        self,
        namespace: str,
        backend: StorageBackend,
        quota_bytes: int = MAX_STORAGE_BYTES,
        *,
        permitted: bool = True,
    ) -> None:
        self._namespace = namespace
        self._backend = backend
        self._quota = quota_bytes
        self._permitted = permitted

    def _check(self) -> None:
        if not self._permitted:
            raise PermissionDeniedError(
                f'Adapter "{self._namespace}" lacks the "storage:local" permission'
            )

    async def get(self, key: str) -> Any:
        self._check()
        records = await self._backend.load(self._namespace)
        return records.get(key)

    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``.

        Raises:
            StorageQuotaError: if the namespace would exceed its quota.
            StorageValueError: if the value is not JSON-serialisable.
        """
        self._check()
        value = _json_copy(value)
        new_bytes = json_byte_size(value)
        async with self._backend.lock_for(self._namespace):
            records = await self._backend.load(self._namespace)
            existing = sum(json_byte_size(v) for k, v in records.items() if k != key)
            if existing + new_bytes > self._quota:
                raise StorageQuotaError(
                    f'Storage quota exceeded for adapter "{self._namespace}" '
                    f"(max {self._quota // 1024} KB)"
                )
            records[key] = value
            await self._backend.save(self._namespace, records)

    async def delete(self, key: str) -> None:
        self._check()
        async with self._backend.lock_for(self._namespace):
            records = await self._backend.load(self._namespace)
            if key in records:
                del records[key]
                await self._backend.save(self._namespace, records)

    async def clear(self) -> None:
        self._check()
        async with self._backend.lock_for(self._namespace):
            await self._backend.save(self._namespace, {})

    async def used_bytes(self) -> int:
        records = await self._backend.load(self._namespace)
        return sum(json_byte_size(v) for v in records.values())
