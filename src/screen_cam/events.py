"""Event records shared by the log sources, router and trimming stage."""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Mapping


class ParseError(ValueError):
    """Raised when a line or message cannot be turned into an event."""


# Navigation and tab lifecycle events are delivered to every global subscriber.
INITIAL_TABS = "INITIAL_TABS"
TAB_REMOVED = "TAB_REMOVED"
TAB_ACTIVATED = "TAB_ACTIVATED"
NAVIGATION_STARTED = "NAVIGATION_STARTED"
NAVIGATION_COMPLETED = "NAVIGATION_COMPLETED"

NAVIGATION_EVENT_TYPES: frozenset[str] = frozenset(
    {
        INITIAL_TABS,
        TAB_REMOVED,
        TAB_ACTIVATED,
        NAVIGATION_STARTED,
        NAVIGATION_COMPLETED,
    }
)

# Directives and request/response message types exchanged with the extension.
START_RECORDING = "START_RECORDING"
STOP_RECORDING = "STOP_RECORDING"
GET_PAGE_DOM = "GET_PAGE_DOM"
DOM_RESULT = "DOM_RESULT"

FILE_LOG_EVENT = "log"


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def coerce_timestamp(value: object) -> int | None:
    """Return *value* as integer milliseconds or ``None`` when unusable."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(float(text))
        except ValueError:
            return None
    return None


@dataclass(frozen=True, slots=True)
class RawEvent:
    """An event as emitted by a source. Never mutated once created."""

    type: str
    payload: Mapping[str, Any]
    timestamp: int
    source_id: str
    request_id: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def tab_id(self) -> object | None:
        if isinstance(self.payload, Mapping):
            return self.payload.get("tabId")
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data["type"] = self.type
        data["payload"] = _copy_payload(self.payload)
        data["time"] = self.timestamp
        if self.request_id is not None:
            data["requestId"] = self.request_id
        return data


def _copy_payload(payload: object) -> object:
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, list):
        return list(payload)
    return payload


def parse_log_line(
    line: str, *, source_id: str, received_at: int | None = None
) -> RawEvent:
    """Turn one line of a tailed file into an event.

    JSON objects keep their fields; anything else is wrapped as a raw text
    message stamped with the receipt time.
    """

    received = received_at if received_at is not None else now_ms()
    record: dict[str, Any] | None = None
    stripped = line.strip()
    if stripped.startswith("{"):
        try:
            decoded = json.loads(stripped)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            record = decoded
    if record is None:
        record = {"message": stripped, "timestamp": received, "raw": True}
    timestamp = coerce_timestamp(record.get("time"))
    if timestamp is None:
        timestamp = received
    event_type = record.get("type")
    if not isinstance(event_type, str) or not event_type:
        event_type = FILE_LOG_EVENT
    return RawEvent(
        type=event_type,
        payload=record,
        timestamp=timestamp,
        source_id=source_id,
    )


def parse_remote_message(
    text: str | bytes, *, source_id: str = "extension", received_at: int | None = None
) -> RawEvent:
    """Decode a JSON message received from the browser extension."""

    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError("Extension message is not valid UTF-8") from exc
    try:
        message = json.loads(text)
    except ValueError as exc:
        raise ParseError(f"Extension message is not valid JSON: {exc}") from exc
    return event_from_message(message, source_id=source_id, received_at=received_at)


def event_from_message(
    message: object, *, source_id: str = "extension", received_at: int | None = None
) -> RawEvent:
    if not isinstance(message, Mapping):
        raise ParseError("Extension message must be a JSON object")
    event_type = message.get("type")
    if not isinstance(event_type, str) or not event_type.strip():
        raise ParseError("Extension message is missing a type")
    payload = message.get("payload")
    if payload is None:
        payload = {}
    timestamp = coerce_timestamp(message.get("time"))
    if timestamp is None:
        timestamp = received_at if received_at is not None else now_ms()
    request_id = message.get("requestId")
    extra = {
        key: value
        for key, value in message.items()
        if key not in {"type", "payload", "time", "requestId"}
    }
    return RawEvent(
        type=event_type.strip(),
        payload=payload,
        timestamp=timestamp,
        source_id=source_id,
        request_id=request_id if isinstance(request_id, str) else None,
        extra=extra,
    )


__all__ = [
    "DOM_RESULT",
    "FILE_LOG_EVENT",
    "GET_PAGE_DOM",
    "INITIAL_TABS",
    "NAVIGATION_COMPLETED",
    "NAVIGATION_EVENT_TYPES",
    "NAVIGATION_STARTED",
    "ParseError",
    "RawEvent",
    "START_RECORDING",
    "STOP_RECORDING",
    "TAB_ACTIVATED",
    "TAB_REMOVED",
    "coerce_timestamp",
    "event_from_message",
    "now_ms",
    "parse_log_line",
    "parse_remote_message",
]
