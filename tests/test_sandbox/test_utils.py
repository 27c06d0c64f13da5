"""Tests for sandbox/utils.py."""

from __future__ import annotations

from datetime import datetime

import pytest

from sandbox.utils import UtilsAPI, format_currency, parse_amount, parse_date


class TestParseDate:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("2026-02-18", datetime(2026, 2, 18)),
            ("2026-02-18T10:30:00", datetime(2026, 2, 18, 10, 30)),
            ("02/18/2026", datetime(2026, 2, 18)),
            ("2/8/2026", datetime(2026, 2, 8)),
            ("February 18, 2026", datetime(2026, 2, 18)),
            ("Feb 18, 2026", datetime(2026, 2, 18)),
        ],
    )
    def test_formats(self, text: str, expected: datetime) -> None:
        assert parse_date(text) == expected

    @pytest.mark.parametrize("text", ["", "soon", "13/45/2026", "2026-02-30", None, 20260218])
    def test_failures_return_none(self, text: object) -> None:
        assert parse_date(text) is None  # type: ignore[arg-type]


class TestCurrency:
    def test_format(self) -> None:
        assert format_currency(1234.5) == "$1,234.50"
        assert format_currency(0) == "$0.00"
        assert format_currency(-1234.5) == "-$1,234.50"

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("$1,234.50", 1234.5),
            (" $ 291 ", 291.0),
            ("0", 0.0),
            ("-$12", -12.0),
            ("12 per month", 12.0),
            ("N/A", None),
            ("", None),
        ],
    )
    def test_parse_amount(self, text: str, expected: float | None) -> None:
        assert parse_amount(text) == expected

    def test_parse_amount_non_string(self) -> None:
        assert parse_amount(None) is None  # type: ignore[arg-type]


class TestUtilsAPI:
    @pytest.mark.asyncio
    async def test_surface(self) -> None:
        utils = UtilsAPI()
        await utils.sleep(0)
        await utils.sleep(-1)
        assert utils.format_currency(5) == "$5.00"
        assert utils.parse_amount("$5") == 5.0
        assert utils.parse_date("01/02/2026") == datetime(2026, 1, 2)
