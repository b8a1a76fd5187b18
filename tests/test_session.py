"""Tests for the session record and the single-session slot."""

from __future__ import annotations

from pathlib import Path

import pytest

from screen_cam.session import AlreadyActive, NotActive, Session, SessionSlot, SessionStatus


def _session(tmp_path: Path) -> Session:
    return Session(output_path=tmp_path / "out.webm", temp_path=tmp_path / "temp.webm")


def test_slot_holds_one_session(tmp_path: Path) -> None:
    slot = SessionSlot()
    first = slot.acquire(_session(tmp_path))

    with pytest.raises(AlreadyActive):
        slot.acquire(_session(tmp_path))

    assert slot.current is first
    assert slot.is_active


def test_release_only_clears_the_holder(tmp_path: Path) -> None:
    slot = SessionSlot()
    holder = slot.acquire(_session(tmp_path))

    slot.release(_session(tmp_path))
    assert slot.peek() is holder

    slot.release(holder)
    assert slot.peek() is None
    with pytest.raises(NotActive):
        slot.current


def test_end_is_fixed_on_first_mark(tmp_path: Path) -> None:
    session = _session(tmp_path)
    session.start_ms = 1_000
    session.start_monotonic -= 2.5

    end = session.mark_ended()
    again = session.mark_ended()

    assert end == again
    assert session.end_ms == end
    assert session.duration_ms == end - 1_000
    assert session.duration_ms >= 2_500


def test_session_serialises_status(tmp_path: Path) -> None:
    session = _session(tmp_path)
    session.status = SessionStatus.RECORDING

    data = session.to_dict()

    assert data["status"] == "recording"
    assert data["end_ms"] is None
    assert data["output_path"] == str(tmp_path / "out.webm")
    assert len(session.id.split("-")) == 3
