"""Centralized logging setup: file plus stderr console output.

Each launch creates a new timestamped log file in ``logs/`` (e.g.
``logs/civic-mcp_2026-02-19_15-30-00.log``). A ``latest.log`` symlink
always points to the current session's log. Old logs beyond
``_MAX_LOG_FILES`` are automatically cleaned up.

The console handler writes to stderr only: stdout carries MCP JSON-RPC.

Includes a RedactingFilter that strips API keys, passwords, and values
typed into forms that look like US Social Security numbers before they
reach disk or the console.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from datetime import datetime
from pathlib import Path

_MAX_LOG_FILES = 10
_LOG_PREFIX = "civic-mcp_"
_FMT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

_configured = False

_REDACT_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(Bearer\s+[a-zA-Z0-9._\-]+)", re.I),
    re.compile(r"(api[_-]?key|token|secret|password|passwd|authorization)\s*[:=]\s*\S+", re.I),
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
]

_REDACTED = "[REDACTED]"


def redact(text: str) -> str:
    for pattern in _REDACT_PATTERNS:
        text = pattern.sub(_REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Strip sensitive patterns from log records before output."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {
                k: redact(v) if isinstance(v, str) else v for k, v in record.args.items()
            }
        return True


def _cleanup_old_logs(log_dir: Path) -> None:
    """Remove oldest log files when count exceeds _MAX_LOG_FILES."""
    log_files = sorted(
        (f for f in log_dir.iterdir() if f.name.startswith(_LOG_PREFIX) and f.suffix == ".log"),
        key=lambda f: f.stat().st_mtime,
    )
    while len(log_files) > _MAX_LOG_FILES:
        oldest = log_files.pop(0)
        oldest.unlink(missing_ok=True)


def setup_logging(
    *,
    debug: bool = False,
    log_dir: Path | str = "logs",
    stderr_only: bool = False,
) -> None:
    """Configure the root logger with a timestamped file handler and a stderr console.

    With ``stderr_only`` no file is written. Safe to call multiple times;
    subsequent calls are no-ops.
    """
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    redact_filter = RedactingFilter()
    fmt = logging.Formatter(_FMT, datefmt=_DATE_FMT)

    if not stderr_only:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        log_file = log_path / f"{_LOG_PREFIX}{timestamp}.log"

        latest_link = log_path / "latest.log"
        try:
            if latest_link.is_symlink() or latest_link.exists():
                latest_link.unlink()
            os.symlink(log_file.name, latest_link)
        except OSError:
            pass  # Symlinks may not work on all platforms

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        fh.addFilter(redact_filter)
        root.addHandler(fh)
        _cleanup_old_logs(log_path)

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if debug else logging.INFO)
    ch.setFormatter(fmt)
    ch.addFilter(redact_filter)
    root.addHandler(ch)

    # Third-party chatter stays out of the console unless debugging.
    for noisy in ("websockets", "asyncio", "mcp"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if debug else logging.WARNING)
