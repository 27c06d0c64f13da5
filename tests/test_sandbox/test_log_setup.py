"""Tests for sandbox/log_setup.py redaction."""

from __future__ import annotations

import logging

from sandbox.log_setup import RedactingFilter, redact


class TestRedact:
    def test_secrets(self) -> None:
        assert "hunter2" not in redact("password=hunter2")
        assert "abc.def" not in redact("Authorization: Bearer abc.def")
        assert "sk-123" not in redact("api_key: sk-123")

    def test_ssn(self) -> None:
        assert redact("fill #ssn with 123-45-6789") == "fill #ssn with [REDACTED]"

    def test_plain_text_untouched(self) -> None:
        assert redact("Loaded adapter gov.example.benefits (1 tools)") == (
            "Loaded adapter gov.example.benefits (1 tools)"
        )


class TestRedactingFilter:
    def test_redacts_args(self) -> None:
        record = logging.LogRecord(
            "t", logging.INFO, __file__, 1, "value %s for %s", ("123-45-6789", "#ssn"), None
        )
        assert RedactingFilter().filter(record)
        assert record.getMessage() == "value [REDACTED] for #ssn"

    def test_non_string_args_pass_through(self) -> None:
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "%d tools", (3,), None)
        RedactingFilter().filter(record)
        assert record.getMessage() == "3 tools"
