from __future__ import annotations

import json
from pathlib import Path

from screen_cam.journal import SessionJournal


def test_record_persists_entries(tmp_path: Path) -> None:
    path = tmp_path / "journal.jsonl"
    journal = SessionJournal(path)

    entry = journal.record("s1", "started", "Recording started", pid=42, output_path=None)

    assert entry.details == {"pid": 42}
    (line,) = path.read_text(encoding="utf-8").splitlines()
    payload = json.loads(line)
    assert payload["session_id"] == "s1"
    assert payload["details"] == {"pid": 42}


def test_entries_reload_from_disk(tmp_path: Path) -> None:
    path = tmp_path / "journal.jsonl"
    journal = SessionJournal(path)
    journal.record("s1", "started", "Recording started")
    journal.record("s1", "completed", "Recording completed")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("garbage\n")
        handle.write(json.dumps({"session_id": "s2"}) + "\n")

    reloaded = SessionJournal(path)

    assert [entry.event for entry in reloaded.tail()] == ["started", "completed"]


def test_tail_filters_and_limits(tmp_path: Path) -> None:
    journal = SessionJournal(tmp_path / "journal.jsonl", max_entries=3)
    for index in range(4):
        journal.record("a" if index % 2 else "b", f"event-{index}", "message")

    assert [entry.event for entry in journal.tail()] == ["event-1", "event-2", "event-3"]
    assert [entry.event for entry in journal.tail(1)] == ["event-3"]
    assert [entry.event for entry in journal.tail(session_id="a")] == ["event-1", "event-3"]


def test_journal_without_path_stays_in_memory() -> None:
    journal = SessionJournal(None)
    journal.record("s", "started", "Recording started")

    assert journal.path is None
    assert len(journal.tail()) == 1
