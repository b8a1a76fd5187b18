"""Recording session state and the single active-session slot."""
from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .events import now_ms


class SessionError(RuntimeError):
    """Base class for session lifecycle failures."""


class AlreadyActive(SessionError):
    """Raised when a session is started while another one is active."""


class NotActive(SessionError):
    """Raised when an operation requires an active session and none exists."""


class SessionStatus(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


def new_session_id() -> str:
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class Session:
    """One record-then-finalize lifecycle."""

    output_path: Path
    temp_path: Path
    id: str = field(default_factory=new_session_id)
    start_ms: int = field(default_factory=now_ms)
    start_monotonic: float = field(default_factory=time.monotonic)
    status: SessionStatus = SessionStatus.IDLE
    snapshot_path: Path | None = None
    preview_path: Path | None = None
    _end_ms: int | None = None

    @property
    def end_ms(self) -> int | None:
        return self._end_ms

    def mark_ended(self) -> int:
        """Fix the end timestamp. Later calls return the first value."""

        if self._end_ms is None:
            elapsed = int((time.monotonic() - self.start_monotonic) * 1000)
            self._end_ms = self.start_ms + max(0, elapsed)
        return self._end_ms

    @property
    def duration_ms(self) -> int:
        if self._end_ms is not None:
            return self._end_ms - self.start_ms
        return max(0, int((time.monotonic() - self.start_monotonic) * 1000))

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "status": self.status.value,
            "start_ms": self.start_ms,
            "end_ms": self._end_ms,
            "duration_ms": self.duration_ms,
            "output_path": str(self.output_path),
            "temp_path": str(self.temp_path),
        }


class SessionSlot:
    """Holds at most one active :class:`Session`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._session: Session | None = None

    def acquire(self, session: Session) -> Session:
        with self._lock:
            if self._session is not None:
                raise AlreadyActive(
                    f"Session {self._session.id} is already {self._session.status.value}"
                )
            self._session = session
        return session

    def release(self, session: Session | None = None) -> None:
        """Clear the slot; with *session* given, only if it is the holder."""

        with self._lock:
            if session is None or self._session is session:
                self._session = None

    @property
    def current(self) -> Session:
        session = self._session
        if session is None:
            raise NotActive("No recording session is active")
        return session

    def peek(self) -> Session | None:
        return self._session

    @property
    def is_active(self) -> bool:
        return self._session is not None


__all__ = [
    "AlreadyActive",
    "NotActive",
    "Session",
    "SessionError",
    "SessionSlot",
    "SessionStatus",
    "new_session_id",
]
