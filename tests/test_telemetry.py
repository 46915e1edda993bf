from __future__ import annotations

import io
import json
from datetime import datetime, timezone

import pytest

from tablesync.telemetry import TelemetryLogger, build_event


def test_build_event_rejects_unknown_category() -> None:
    with pytest.raises(ValueError):
        build_event(category="ui", name="tabs.click", action="click")


def test_build_event_rejects_guest_identifying_context() -> None:
    with pytest.raises(ValueError) as excinfo:
        build_event(
            category="mutation",
            name="customer_tabs.create_customer_tab",
            action="create_customer_tab",
            context={"Tab_Name": "Guest A"},
        )
    assert "Tab_Name" in str(excinfo.value)


def test_event_dict_omits_empty_fields() -> None:
    event = build_event(
        category="sync",
        name="sync.run_cycle",
        action="run_cycle",
        table_number=5,
        now=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    assert event.to_dict() == {
        "category": "sync",
        "name": "sync.run_cycle",
        "action": "run_cycle",
        "timestamp_utc": "2024-01-01T00:00:00+00:00",
        "table_number": 5,
    }


def test_logger_writes_jsonl_and_stdout(tmp_path) -> None:
    stream = io.StringIO()
    log_file = tmp_path / "telemetry" / "events.jsonl"
    logger = TelemetryLogger(enabled=True, log_file=log_file, stdout_sink=True, stdout_stream=stream)

    event = build_event(
        category="error",
        name="table_orders.update_table_items",
        action="update_table_items",
        success=False,
        error_code="HTTP_ERROR",
    )
    assert logger.emit(event)
    assert logger.emit(event)

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    payload = json.loads(lines[0])
    assert payload["app_name"] == "tablesync"
    assert payload["error_code"] == "HTTP_ERROR"
    assert stream.getvalue().splitlines() == lines


def test_disabled_logger_writes_nothing(tmp_path) -> None:
    log_file = tmp_path / "events.jsonl"
    logger = TelemetryLogger(enabled=False, log_file=log_file)

    assert not logger.emit(build_event(category="mutation", name="x", action="x"))
    assert not log_file.exists()


def test_enabled_flag_read_from_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("TABLESYNC_TELEMETRY_ENABLED", "true")
    assert TelemetryLogger(log_file=tmp_path / "a.jsonl").enabled
    monkeypatch.setenv("TABLESYNC_TELEMETRY_ENABLED", "0")
    assert not TelemetryLogger(log_file=tmp_path / "b.jsonl").enabled
