"""Tests for per-session log sources."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Callable

import pytest

from screen_cam.events import RawEvent
from screen_cam.file_tail import FileTailManager
from screen_cam.log_sources import (
    FILE_SOURCE_NAME,
    LogsTrackerManager,
    SourceType,
    WebPattern,
)


class FakeTails:
    def __init__(self) -> None:
        self.callbacks: dict[str, Callable[[RawEvent], None]] = {}
        self.drained: list[str] = []

    def subscribe(self, path, callback):
        self.callbacks[str(path)] = callback
        return lambda: self.callbacks.pop(str(path), None)

    def drain(self, path):
        self.drained.append(str(path))
        return 0


class FakeRouter:
    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[RawEvent], None]] = {}

    def subscribe(self, pattern, handler):
        self.handlers[pattern] = handler
        return lambda: self.handlers.pop(pattern, None)


def _event(message: str, time: int = 10, **payload: object) -> RawEvent:
    return RawEvent(
        type="log", payload={"message": message, **payload}, timestamp=time, source_id="test"
    )


def _read_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_file_source_records_tracked_files(tmp_path: Path) -> None:
    log_file = tmp_path / "app.log"
    log_file.write_text("", encoding="utf-8")
    tails = FakeTails()
    manager = LogsTrackerManager(tails, FakeRouter())
    session_dir = tmp_path / "session"

    manager.start_new("s1", session_dir, files=[log_file, tmp_path / "missing.log"])
    tails.callbacks[str(log_file)](_event("hello", time=25))
    (status,) = manager.stop("s1")

    assert status.id == "files"
    assert status.type is SourceType.FILE
    assert status.raw_count == 1
    assert status.items == [str(log_file)]
    assert status.file_location == session_dir / FILE_SOURCE_NAME
    (record,) = _read_lines(status.file_location)
    assert record["time"] == 25
    assert record["logFile"] == str(log_file)
    assert "trackedAt" in record
    assert tails.callbacks == {}
    assert tails.drained == [str(log_file)]


def test_web_source_subscribes_to_pattern(tmp_path: Path) -> None:
    router = FakeRouter()
    manager = LogsTrackerManager(FakeTails(), router)

    manager.start_new(
        "s1",
        tmp_path,
        web_patterns=[{"name": "My App", "pattern": "https://app.example/*"}],
    )
    router.handlers["https://app.example/*"](_event("console", tabId=1))
    router.handlers["https://app.example/*"](_event("console", tabId=1))
    (status,) = manager.stop("s1")

    assert status.id == "web:My App"
    assert status.type is SourceType.REMOTE
    assert status.raw_count == 2
    assert status.file_location == tmp_path / "web_my-app.jsonl"
    assert router.handlers == {}
    assert status.to_dict()["type"] == "remote"


def test_sessions_cannot_start_twice(tmp_path: Path) -> None:
    manager = LogsTrackerManager(FakeTails(), FakeRouter())
    manager.start_new("s1", tmp_path)

    with pytest.raises(ValueError):
        manager.start_new("s1", tmp_path)

    assert manager.active_sessions == ["s1"]
    assert manager.stop("s1") == []
    assert manager.stop("s1") == []


def test_destroy_stops_every_session(tmp_path: Path) -> None:
    router = FakeRouter()
    manager = LogsTrackerManager(FakeTails(), router)
    manager.start_new("a", tmp_path / "a", web_patterns=[WebPattern("a", "https://a/*")])
    manager.start_new("b", tmp_path / "b", web_patterns=[WebPattern("b", "https://b/*")])

    manager.destroy()

    assert manager.active_sessions == []
    assert router.handlers == {}


def test_web_pattern_validation() -> None:
    assert WebPattern.from_mapping({"pattern": " https://x/* "}) == WebPattern(
        name="https://x/*", pattern="https://x/*"
    )
    with pytest.raises(ValueError):
        WebPattern.from_mapping({"name": "empty", "pattern": ""})


def test_stop_keeps_lines_appended_since_last_poll(tmp_path: Path) -> None:
    log_file = tmp_path / "app.log"
    log_file.write_text("before\n", encoding="utf-8")
    tails = FileTailManager(poll_interval=30.0)
    manager = LogsTrackerManager(tails, FakeRouter())

    async def _run():
        manager.start_new("s1", tmp_path / "session", files=[log_file])
        await asyncio.sleep(0)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write('{"time": 42, "message": "late"}\n')
        return manager.stop("s1")

    (status,) = asyncio.run(_run())

    assert status.raw_count == 1
    (record,) = _read_lines(status.file_location)
    assert record["time"] == 42
    assert record["payload"]["message"] == "late"
    assert tails.stats() == []
