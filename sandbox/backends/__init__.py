"""Hosting backends for the capability API.

A backend turns an adapter manifest into a ``CapabilityContext`` for the
duration of one tool call. The three hosts differ only in their
primitives (embedded page, driven test page, pooled browser contexts) and
where storage and human prompts go.
"""

from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager

from sandbox.capability import CapabilityContext
from sandbox.manifest import AdapterManifest


class Backend(abc.ABC):
    """Source of per-call capability contexts."""

    @abc.abstractmethod
    def session(self, manifest: AdapterManifest) -> AbstractAsyncContextManager[CapabilityContext]:
        """Async context manager yielding a context bound to ``manifest``."""
        ...

    async def close(self) -> None:
        """Release backend resources. Default: nothing to release."""
