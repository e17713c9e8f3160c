"""Unit tests for the structured logging configuration.

Verifies that ``configure_logging()`` produces well-formed output, that the
``mission_id_var`` context variable is propagated and that secrets are
redacted.
"""

from __future__ import annotations

import json
import logging
from io import StringIO

import structlog

from ad_observatory.core.logging_config import configure_logging, mission_id_var


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _records(output: str) -> list[dict]:
    return [json.loads(line) for line in output.strip().splitlines() if line.strip()]


def _capture(message: str, **fields) -> list[dict]:
    """Configure INFO logging into a buffer, emit one structlog event, return parsed records."""
    buffer = StringIO()
    configure_logging("INFO", stream=buffer)
    structlog.get_logger("test.logging_config").info(message, **fields)
    for handler in logging.getLogger().handlers:
        handler.flush()
    return _records(buffer.getvalue())


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestConfigureLoggingJson:
    """Verify INFO-level (production) JSON output."""

    def test_logging_produces_json(self) -> None:
        records = _capture("test_message_json")
        assert records, "Expected at least one log line, got none"
        assert all(isinstance(r, dict) for r in records)

    def test_json_contains_required_fields(self) -> None:
        records = _capture("required_fields_test", keyword="shoes")
        target = next(r for r in records if r.get("event") == "required_fields_test")

        assert "timestamp" in target
        assert target["level"] == "info"
        assert target["logger"] == "test.logging_config"
        assert target["keyword"] == "shoes"

    def test_stdlib_logger_is_rendered_as_json(self) -> None:
        buffer = StringIO()
        configure_logging("INFO", stream=buffer)
        logging.getLogger("test.stdlib").info("stdlib_event")
        records = _records(buffer.getvalue())

        assert any(r.get("event") == "stdlib_event" for r in records)


class TestMissionIdContextVar:
    def test_mission_id_appears_in_output(self) -> None:
        token = mission_id_var.set("mission-1234")
        try:
            records = _capture("mission_id_propagation_test")
        finally:
            mission_id_var.reset(token)

        target = next(r for r in records if r.get("event") == "mission_id_propagation_test")
        assert target.get("mission_id") == "mission-1234"

    def test_no_mission_id_when_var_unset(self) -> None:
        token = mission_id_var.set(None)
        try:
            records = _capture("no_mission_id_test")
        finally:
            mission_id_var.reset(token)

        target = next(r for r in records if r.get("event") == "no_mission_id_test")
        assert target.get("mission_id") is None

    def test_explicit_mission_id_wins(self) -> None:
        token = mission_id_var.set("from-context")
        try:
            records = _capture("explicit_mission_id_test", mission_id="explicit")
        finally:
            mission_id_var.reset(token)

        target = next(r for r in records if r.get("event") == "explicit_mission_id_test")
        assert target["mission_id"] == "explicit"


class TestRedaction:
    def test_secret_keys_are_redacted(self) -> None:
        records = _capture(
            "redaction_test",
            database_url="postgresql://u:p@db/x",
            options={"password": "hunter2", "region": "IN"},
        )
        target = next(r for r in records if r.get("event") == "redaction_test")

        assert target["database_url"] == "[REDACTED]"
        assert target["options"]["password"] == "[REDACTED]"
        assert target["options"]["region"] == "IN"


class TestConfigureLoggingIdempotent:
    def test_calling_twice_does_not_duplicate_handlers(self) -> None:
        configure_logging("INFO")
        configure_logging("INFO")

        assert len(logging.getLogger().handlers) == 1
