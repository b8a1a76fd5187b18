"""Tests for event parsing helpers."""

from __future__ import annotations

import json

import pytest

from screen_cam.events import (
    FILE_LOG_EVENT,
    ParseError,
    coerce_timestamp,
    event_from_message,
    parse_log_line,
    parse_remote_message,
)


def test_json_line_keeps_fields_and_time() -> None:
    event = parse_log_line(
        json.dumps({"time": 1500, "level": "info", "message": "hello"}),
        source_id="app.log",
        received_at=9999,
    )

    assert event.type == FILE_LOG_EVENT
    assert event.timestamp == 1500
    assert event.payload["level"] == "info"
    assert event.source_id == "app.log"


def test_plain_text_line_is_wrapped_as_raw() -> None:
    event = parse_log_line("server started", source_id="app.log", received_at=1234)

    assert event.timestamp == 1234
    assert event.payload == {"message": "server started", "timestamp": 1234, "raw": True}


def test_json_line_without_time_uses_receipt_time() -> None:
    event = parse_log_line('{"type": "custom"}', source_id="x", received_at=42)

    assert event.type == "custom"
    assert event.timestamp == 42
    assert event.to_dict()["time"] == 42


def test_remote_message_collects_extra_fields() -> None:
    event = parse_remote_message(
        json.dumps(
            {
                "type": "CONSOLE",
                "payload": {"tabId": 7, "url": "https://example.com/"},
                "time": 100,
                "requestId": "abc",
                "frameId": 3,
            }
        ),
        received_at=5,
    )

    assert event.type == "CONSOLE"
    assert event.tab_id == 7
    assert event.timestamp == 100
    assert event.request_id == "abc"
    assert event.extra == {"frameId": 3}
    assert event.to_dict()["frameId"] == 3


@pytest.mark.parametrize("text", ["not json", "[1, 2]", '{"payload": {}}', '{"type": "  "}'])
def test_invalid_remote_messages_raise_parse_error(text: str) -> None:
    with pytest.raises(ParseError):
        parse_remote_message(text)


def test_event_from_message_defaults_payload() -> None:
    event = event_from_message({"type": "PING"}, received_at=10)

    assert event.payload == {}
    assert event.timestamp == 10


@pytest.mark.parametrize(
    ("value", "expected"),
    [(12, 12), (12.9, 12), ("1500", 1500), ("", None), (None, None), (True, None), ("abc", None)],
)
def test_coerce_timestamp(value: object, expected: int | None) -> None:
    assert coerce_timestamp(value) == expected
