"""Per-session log sources that persist routed events to JSON-lines files."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from .events import RawEvent, now_ms
from .file_tail import FileTailManager
from .log_router import LogRouter

logger = logging.getLogger(__name__)

FILE_SOURCE_NAME = "file_logs.jsonl"


class SourceType(str, Enum):
    FILE = "file"
    REMOTE = "remote"


@dataclass(slots=True)
class LogSourceStatus:
    """Outcome of one tracked source for one session."""

    id: str
    type: SourceType
    file_location: Path
    raw_count: int = 0
    trimmed_file_location: Path | None = None
    name: str | None = None
    items: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "file_location": str(self.file_location),
            "count": self.raw_count,
            "trimmed_file_location": (
                str(self.trimmed_file_location)
                if self.trimmed_file_location is not None
                else None
            ),
            "items": list(self.items),
        }


@dataclass(slots=True)
class WebPattern:
    name: str
    pattern: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WebPattern":
        pattern = data.get("pattern")
        if not isinstance(pattern, str) or not pattern.strip():
            raise ValueError("Web pattern entries require a non-empty pattern")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            name = pattern
        return cls(name=name.strip(), pattern=pattern.strip())

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "pattern": self.pattern}


def _slug(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value).strip("-").lower()
    return cleaned or "pattern"


class _JsonLinesWriter:
    """Append events to one file and count them."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.count = 0

    def write(self, record: Mapping[str, Any]) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, separators=(",", ":"), default=str) + "\n")
        except OSError as exc:
            logger.warning("Unable to persist log event to %s: %s", self.path, exc)
            return
        self.count += 1


class FileLogSource:
    """Record lines appended to tracked files during one session."""

    def __init__(
        self,
        tails: FileTailManager,
        directory: Path,
        files: Iterable[Path | str],
    ) -> None:
        self._tails = tails
        self._writer = _JsonLinesWriter(directory / FILE_SOURCE_NAME)
        self._files = [str(Path(item)) for item in files]
        self._unsubscribers: list[Callable[[], None]] = []
        self.tracked: list[str] = []

    def start(self) -> None:
        for path in self._files:
            if not Path(path).is_file():
                logger.warning("Skipping missing log file %s", path)
                continue
            try:
                unsubscribe = self._tails.subscribe(path, self._handler_for(path))
            except FileNotFoundError:
                logger.warning("Skipping missing log file %s", path)
                continue
            self._unsubscribers.append(unsubscribe)
            self.tracked.append(path)
        logger.info("Tracking %d log file(s)", len(self.tracked))

    def stop(self) -> LogSourceStatus:
        for path in self.tracked:
            self._tails.drain(path)
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        return LogSourceStatus(
            id="files",
            type=SourceType.FILE,
            name="Log files",
            file_location=self._writer.path,
            raw_count=self._writer.count,
            items=list(self.tracked),
        )

    def _handler_for(self, path: str) -> Callable[[RawEvent], None]:
        def _handle(event: RawEvent) -> None:
            record = event.to_dict()
            record["logFile"] = path
            record["trackedAt"] = now_ms()
            self._writer.write(record)

        return _handle


class WebLogSource:
    """Record extension events whose tab matches one URL pattern."""

    def __init__(self, router: LogRouter, directory: Path, pattern: WebPattern) -> None:
        self._router = router
        self._pattern = pattern
        self._writer = _JsonLinesWriter(directory / f"web_{_slug(pattern.name)}.jsonl")
        self._unsubscribe: Callable[[], None] | None = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._router.subscribe(self._pattern.pattern, self._handle)

    def stop(self) -> LogSourceStatus:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        return LogSourceStatus(
            id=f"web:{self._pattern.name}",
            type=SourceType.REMOTE,
            name=self._pattern.name,
            file_location=self._writer.path,
            raw_count=self._writer.count,
            items=[self._pattern.pattern],
        )

    def _handle(self, event: RawEvent) -> None:
        record = event.to_dict()
        record["trackedAt"] = now_ms()
        self._writer.write(record)


@dataclass
class _SessionSources:
    directory: Path
    files: FileLogSource | None
    web: list[WebLogSource]


class LogsTrackerManager:
    """Create and seal the log sources belonging to each session."""

    def __init__(self, tails: FileTailManager, router: LogRouter) -> None:
        self._tails = tails
        self._router = router
        self._sessions: dict[str, _SessionSources] = {}

    @property
    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    def start_new(
        self,
        session_id: str,
        directory: Path | str,
        *,
        files: Sequence[Path | str] = (),
        web_patterns: Sequence[WebPattern | Mapping[str, Any]] = (),
    ) -> None:
        if session_id in self._sessions:
            raise ValueError(f"Log tracking already running for session {session_id}")
        target = Path(directory)
        target.mkdir(parents=True, exist_ok=True)
        file_source = FileLogSource(self._tails, target, files) if files else None
        web_sources = [
            WebLogSource(
                self._router,
                target,
                item if isinstance(item, WebPattern) else WebPattern.from_mapping(item),
            )
            for item in web_patterns
        ]
        sources = _SessionSources(directory=target, files=file_source, web=web_sources)
        self._sessions[session_id] = sources
        if file_source is not None:
            file_source.start()
        for source in web_sources:
            source.start()
        logger.info(
            "Started log tracking for session %s (%d file(s), %d web pattern(s))",
            session_id,
            len(files),
            len(web_sources),
        )

    def stop(self, session_id: str) -> list[LogSourceStatus]:
        """Detach every source of *session_id* and return their records."""

        sources = self._sessions.pop(session_id, None)
        if sources is None:
            return []
        statuses: list[LogSourceStatus] = []
        if sources.files is not None:
            statuses.append(sources.files.stop())
        for source in sources.web:
            statuses.append(source.stop())
        logger.info(
            "Stopped log tracking for session %s (%d event(s))",
            session_id,
            sum(status.raw_count for status in statuses),
        )
        return statuses

    def destroy(self) -> None:
        for session_id in list(self._sessions):
            self.stop(session_id)


__all__ = [
    "FILE_SOURCE_NAME",
    "FileLogSource",
    "LogSourceStatus",
    "LogsTrackerManager",
    "SourceType",
    "WebLogSource",
    "WebPattern",
]
