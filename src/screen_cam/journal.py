"""Persistent record of recording session lifecycle events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JournalEntry:
    """One lifecycle step of one session."""

    timestamp: float
    session_id: str
    event: str
    message: str
    details: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "event": self.event,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class SessionJournal:
    """Append-only JSON-lines journal with an in-memory tail."""

    def __init__(
        self,
        path: Path | str | None = Path("data/session_journal.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[JournalEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare journal directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        session_id: str,
        event: str,
        message: str,
        **details: object | None,
    ) -> JournalEntry:
        """Append an entry; ``None`` detail values are dropped."""

        cleaned = {key: value for key, value in details.items() if value is not None}
        entry = JournalEntry(
            timestamp=time.time(),
            session_id=session_id,
            event=event,
            message=message,
            details=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        session_id: str | None = None,
    ) -> list[JournalEntry]:
        """Return the most recent entries, optionally for one session."""

        with self._lock:
            entries: Iterable[JournalEntry] = list(self._entries)
        if session_id:
            entries = [entry for entry in entries if entry.session_id == session_id]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load session journal: %s", exc)
            return
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = self._deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _deserialize(payload: object) -> JournalEntry | None:
        if not isinstance(payload, dict):
            return None
        session_id = payload.get("session_id")
        event = payload.get("event")
        message = payload.get("message")
        if not all(isinstance(value, str) for value in (session_id, event, message)):
            return None
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        details = payload.get("details")
        return JournalEntry(
            timestamp=timestamp,
            session_id=session_id,
            event=event,
            message=message,
            details=details if isinstance(details, dict) else None,
        )

    def _append_persistent(self, entry: JournalEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(
                    json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n"
                )
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist journal entry: %s", exc)


__all__ = ["JournalEntry", "SessionJournal"]
