"""Error types shared by the capability API, interpreter, and dispatch layer.

Every failure that reaches the calling agent is normalised to a tagged
result carrying one of the ``ErrorCode`` values. ``HumanRequiredError`` is
the one exception kept out of that funnel, so batch runs can treat "a
human is needed" as a skip rather than a failure.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    NAVIGATION_FAILED = "NAVIGATION_FAILED"
    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SITE_CHANGED = "SITE_CHANGED"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    RATE_LIMITED = "RATE_LIMITED"
    UNKNOWN = "UNKNOWN"


# Name -> class, so errors raised on one side of the isolation boundary can
# be re-raised as the same type on the other side.
ERROR_TYPES: dict[str, type[Exception]] = {}


def _register(cls: type[Exception]) -> type[Exception]:
    ERROR_TYPES[cls.__name__] = cls
    return cls


@_register
class AdapterRuntimeError(Exception):
    """Base class for recoverable adapter failures with a machine-readable code."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, message: str, code: ErrorCode | str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = ErrorCode(code)


@_register
class NavigationError(AdapterRuntimeError):
    code = ErrorCode.NAVIGATION_FAILED


@_register
class DomainNotAllowedError(NavigationError):
    """Raised before any page action when a URL is outside the allow-list."""


@_register
class SelectorNotFoundError(AdapterRuntimeError):
    code = ErrorCode.SELECTOR_NOT_FOUND


@_register
class SelectorTimeoutError(SelectorNotFoundError):
    """A wait for a selector to appear or disappear ran out of time."""


@_register
class InputValidationError(AdapterRuntimeError):
    code = ErrorCode.VALIDATION_ERROR


@_register
class StorageQuotaError(AdapterRuntimeError):
    code = ErrorCode.VALIDATION_ERROR


@_register
class StorageValueError(AdapterRuntimeError):
    code = ErrorCode.VALIDATION_ERROR


@_register
class PermissionDeniedError(AdapterRuntimeError):
    code = ErrorCode.AUTH_REQUIRED


@_register
class HumanTimeoutError(AdapterRuntimeError):
    """The deadline of a human-in-the-loop request passed without completion."""


@_register
class SandboxError(AdapterRuntimeError):
    """The isolation boundary failed (child crashed, protocol error, timeout)."""


@_register
class AdapterLoadError(AdapterRuntimeError):
    pass


@_register
class UnknownToolError(AdapterRuntimeError):
    pass


@_register
class HumanRequiredError(Exception):
    """A manual step is needed but no human is available to perform it.

    Not an ``AdapterRuntimeError``: dispatch lets it propagate so
    automated suites can skip instead of fail.
    """

    def __init__(self, prompt: str) -> None:
        super().__init__(
            f'wait_for_human() called without an attended session: "{prompt}". '
            "Run headed (CIVIC_MCP_HEADED=1) to handle this step manually."
        )
        self.prompt = prompt


def error_code_for(exc: BaseException) -> ErrorCode:
    """Return the result code for an exception (UNKNOWN unless it carries one)."""
    if isinstance(exc, AdapterRuntimeError):
        return exc.code
    return ErrorCode.UNKNOWN


def serialize_error(exc: BaseException) -> dict[str, str]:
    """Encode an exception for the isolation protocol."""
    if isinstance(exc, HumanRequiredError):
        # The prompt is what the other side needs to rebuild it.
        return {"type": "HumanRequiredError", "message": exc.prompt, "code": ErrorCode.UNKNOWN}
    name = type(exc).__name__ if type(exc).__name__ in ERROR_TYPES else "AdapterRuntimeError"
    return {"type": name, "message": str(exc), "code": error_code_for(exc)}


def rebuild_error(type_name: str, message: str, code: str | None = None) -> Exception:
    """Recreate an exception serialised by ``serialize_error``."""
    cls = ERROR_TYPES.get(type_name)
    if cls is HumanRequiredError:
        return HumanRequiredError(message)
    if cls is not None and issubclass(cls, AdapterRuntimeError):
        return cls(message, code)
    return AdapterRuntimeError(message, code or ErrorCode.UNKNOWN)
