"""Utility surface of the capability API: small pure helpers for adapters.

None of these raise on bad input; parsers return ``None`` instead.
"""

from __future__ import annotations

import asyncio
import re
from datetime import date, datetime

_MDY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_AMOUNT_STRIP_RE = re.compile(r"[$,\s]")
_LEADING_NUMBER_RE = re.compile(r"^[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_LONG_FORMATS = ("%B %d, %Y", "%b %d, %Y", "%B %d %Y", "%b %d %Y")


async def sleep(seconds: float) -> None:
    await asyncio.sleep(max(0.0, seconds))


def parse_date(value: str) -> datetime | None:
    """Parse ISO, ``MM/DD/YYYY`` or ``Month D, YYYY`` into a datetime."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass

    match = _MDY_RE.match(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        try:
            return datetime.combine(date(year, month, day), datetime.min.time())
        except ValueError:
            return None

    for fmt in _LONG_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def format_currency(amount: float) -> str:
    """Format as US dollars: ``1234.5`` -> ``$1,234.50``."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def parse_amount(value: str) -> float | None:
    """Strip ``$``, ``,`` and whitespace, then parse the leading number."""
    if not isinstance(value, str):
        return None
    return parse_number(_AMOUNT_STRIP_RE.sub("", value))


def parse_number(text: str) -> float | None:
    """Parse the longest numeric prefix of ``text`` (``parseFloat`` semantics)."""
    match = _LEADING_NUMBER_RE.match(text.strip())
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


class UtilsAPI:
    """Utility surface bound into every capability context."""

    sleep = staticmethod(sleep)
    parse_date = staticmethod(parse_date)
    format_currency = staticmethod(format_currency)
    parse_amount = staticmethod(parse_amount)
