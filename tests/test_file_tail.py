"""Tests for following appended lines in log files."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

from screen_cam.events import RawEvent
from screen_cam.file_tail import FileTail, FileTailManager


def _append(path: Path, text: str) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)


def test_tail_starts_at_end_of_file(tmp_path: Path) -> None:
    path = tmp_path / "app.log"
    path.write_text("old line\n", encoding="utf-8")
    events: list[RawEvent] = []
    tail = FileTail(path, events.append)

    async def _run() -> int:
        tail.prime()
        _append(path, '{"time": 10, "message": "new"}\nplain\n')
        return await tail.poll_once()

    assert asyncio.run(_run()) == 2
    assert [event.payload.get("message") for event in events] == ["new", "plain"]
    assert events[0].timestamp == 10
    assert events[1].payload["raw"] is True


def test_partial_lines_wait_for_newline(tmp_path: Path) -> None:
    path = tmp_path / "app.log"
    path.write_text("", encoding="utf-8")
    events: list[RawEvent] = []
    tail = FileTail(path, events.append)

    async def _run() -> list[int]:
        tail.prime()
        _append(path, "hel")
        first = await tail.poll_once()
        _append(path, "lo\n")
        second = await tail.poll_once()
        return [first, second]

    assert asyncio.run(_run()) == [0, 1]
    assert events[0].payload["message"] == "hello"


def test_truncation_restarts_from_beginning(tmp_path: Path) -> None:
    path = tmp_path / "app.log"
    path.write_text("a long existing line\n", encoding="utf-8")
    events: list[RawEvent] = []
    tail = FileTail(path, events.append)

    async def _run() -> None:
        tail.prime()
        path.write_text("x\n", encoding="utf-8")
        await tail.poll_once()

    asyncio.run(_run())
    assert [event.payload["message"] for event in events] == ["x"]


def test_rotation_reads_the_new_file(tmp_path: Path) -> None:
    path = tmp_path / "app.log"
    path.write_text("first\n", encoding="utf-8")
    events: list[RawEvent] = []
    tail = FileTail(path, events.append)

    async def _run() -> None:
        tail.prime()
        os.rename(path, tmp_path / "app.log.1")
        # Keep the old inode alive so the new file cannot reuse it.
        replacement = tmp_path / "app.log.new"
        replacement.write_text("rotated line that is long\n", encoding="utf-8")
        os.rename(replacement, path)
        await tail.poll_once()

    asyncio.run(_run())
    assert [event.payload["message"] for event in events] == ["rotated line that is long"]


def test_callback_errors_do_not_stop_the_tail(tmp_path: Path) -> None:
    path = tmp_path / "app.log"
    path.write_text("", encoding="utf-8")
    seen: list[str] = []

    def _callback(event: RawEvent) -> None:
        seen.append(event.payload["message"])
        raise RuntimeError("boom")

    tail = FileTail(path, _callback)

    async def _run() -> None:
        tail.prime()
        _append(path, "one\ntwo\n")
        await tail.poll_once()

    asyncio.run(_run())
    assert seen == ["one", "two"]
    assert tail.stats()["total_events"] == 2


def test_start_requires_existing_file(tmp_path: Path) -> None:
    tail = FileTail(tmp_path / "missing.log", lambda event: None)

    async def _run() -> None:
        tail.start()

    with pytest.raises(FileNotFoundError):
        asyncio.run(_run())


def test_manager_shares_one_tail_per_path(tmp_path: Path) -> None:
    path = tmp_path / "shared.log"
    path.write_text("", encoding="utf-8")
    first: list[RawEvent] = []
    second: list[RawEvent] = []
    on_first = first.append
    on_second = second.append
    manager = FileTailManager(poll_interval=0.01)

    async def _run() -> None:
        unsubscribe_first = manager.subscribe(path, on_first)
        manager.subscribe(str(path), on_second)
        assert len(manager.stats()) == 1
        _append(path, json.dumps({"message": "both"}) + "\n")
        for _ in range(100):
            if first and second:
                break
            await asyncio.sleep(0.01)
        unsubscribe_first()
        assert manager.tail_for(path) is not None
        manager.unsubscribe(path, on_second)
        assert manager.tail_for(path) is None
        manager.destroy()

    asyncio.run(_run())
    assert [event.payload["message"] for event in first] == ["both"]
    assert [event.payload["message"] for event in second] == ["both"]


def test_drain_emits_pending_lines_once(tmp_path: Path) -> None:
    path = tmp_path / "app.log"
    path.write_text("", encoding="utf-8")
    events: list[RawEvent] = []
    tail = FileTail(path, events.append)

    assert tail.drain() == 0

    async def _run() -> list[int]:
        tail.prime()
        _append(path, "first\n")
        pending = asyncio.ensure_future(tail.poll_once())
        await asyncio.sleep(0)
        drained = tail.drain()
        polled = await pending
        _append(path, "second\n")
        return [drained, polled, tail.drain(), await tail.poll_once()]

    assert asyncio.run(_run()) == [1, 0, 1, 0]
    assert [event.payload["message"] for event in events] == ["first", "second"]
