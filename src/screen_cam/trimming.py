"""Convert recorded log events into session-relative, bounded artifacts."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Sequence

from .events import coerce_timestamp, now_ms
from .log_sources import LogSourceStatus, SourceType

logger = logging.getLogger(__name__)

# Relative times above this are treated as absolute timestamps from a source
# whose clock was never aligned with the session. This is an approximation.
ABSOLUTE_TIMESTAMP_THRESHOLD = 1_000_000_000_000

_PATH_FIELD = "logFile"


class PathAnonymizer:
    """Map each distinct path to a small integer, stable for one pass."""

    def __init__(self) -> None:
        self._ids: dict[str, int] = {}

    def __call__(self, path: str) -> int:
        identifier = self._ids.get(path)
        if identifier is None:
            identifier = len(self._ids) + 1
            self._ids[path] = identifier
        return identifier

    @property
    def mapping(self) -> dict[str, int]:
        return dict(self._ids)


def event_time(record: dict[str, Any], fallback: int | None = None) -> int:
    """Return the absolute time of *record* in milliseconds."""

    for key in ("time", "timestamp"):
        value = coerce_timestamp(record.get(key))
        if value is not None:
            return value
    return fallback if fallback is not None else now_ms()


def relative_time(timestamp: int, session_start_ms: int, client_start_date: int) -> int:
    relative = timestamp - session_start_ms
    if relative > ABSOLUTE_TIMESTAMP_THRESHOLD:
        relative -= client_start_date
    return relative


def _parse_lines(lines: Iterable[str], location: Path) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError as exc:
            logger.warning("Dropping unparseable line %d in %s: %s", number, location, exc)
            continue
        if not isinstance(record, dict):
            logger.warning("Dropping non-object line %d in %s", number, location)
            continue
        records.append(record)
    return records


def trim_records(
    records: Sequence[dict[str, Any]],
    *,
    session_start_ms: int,
    session_end_ms: int,
    client_start_date: int,
    anonymizer: PathAnonymizer | None = None,
) -> list[dict[str, Any]]:
    """Return new records whose ``time`` is relative and within the session."""

    duration = session_end_ms - session_start_ms
    trimmed: list[dict[str, Any]] = []
    for record in records:
        relative = relative_time(event_time(record), session_start_ms, client_start_date)
        if relative < 0 or relative > duration:
            continue
        derived = dict(record)
        derived["time"] = relative
        if anonymizer is not None and isinstance(derived.get(_PATH_FIELD), str):
            derived[_PATH_FIELD] = anonymizer(derived[_PATH_FIELD])
        trimmed.append(derived)
    return trimmed


def _trim_source(
    source: LogSourceStatus,
    *,
    session_start_ms: int,
    session_end_ms: int,
    client_start_date: int,
    session_id: str,
) -> LogSourceStatus | None:
    location = Path(source.file_location)
    try:
        with location.open("r", encoding="utf-8", errors="replace") as handle:
            records = _parse_lines(handle, location)
    except FileNotFoundError:
        logger.warning("Log source %s has no file at %s", source.id, location)
        return None
    except OSError as exc:
        logger.warning("Unable to read log source %s at %s: %s", source.id, location, exc)
        return replace(source, trimmed_file_location=None)
    anonymizer = PathAnonymizer() if source.type is SourceType.FILE else None
    trimmed = trim_records(
        records,
        session_start_ms=session_start_ms,
        session_end_ms=session_end_ms,
        client_start_date=client_start_date,
        anonymizer=anonymizer,
    )
    if not trimmed:
        logger.info("No events from %s fell inside the session", source.id)
        return replace(source, raw_count=0, trimmed_file_location=None)
    target = location.with_name(f"{session_id}_{location.name}")
    try:
        with target.open("w", encoding="utf-8") as handle:
            for record in trimmed:
                handle.write(json.dumps(record, separators=(",", ":"), default=str) + "\n")
    except OSError as exc:
        logger.warning("Unable to write trimmed log for %s to %s: %s", source.id, target, exc)
        _discard_partial(target)
        return replace(source, trimmed_file_location=None)
    logger.debug("Trimmed %s: %d of %d event(s) kept", source.id, len(trimmed), len(records))
    return replace(source, raw_count=len(trimmed), trimmed_file_location=target)


def _discard_partial(path: Path) -> None:
    if not path.is_file():
        return
    try:
        path.unlink()
    except OSError as exc:  # pragma: no cover - depends on filesystem state
        logger.debug("Unable to remove partial trimmed log %s: %s", path, exc)


async def trim_logs(
    sources: Sequence[LogSourceStatus],
    session_start_ms: int,
    session_end_ms: int,
    client_start_date: int,
    session_id: str,
) -> list[LogSourceStatus]:
    """Trim every source that recorded at least one event.

    Sources without raw events are omitted from the result. A source whose
    events all fall outside the session is returned with a zero count and no
    trimmed artifact. A source that cannot be read or written keeps its raw
    file and count but gets no trimmed artifact; the others still proceed.
    """

    if session_end_ms < session_start_ms:
        raise ValueError("session_end_ms must not precede session_start_ms")
    results: list[LogSourceStatus] = []
    for source in sources:
        if source.raw_count <= 0:
            continue
        trimmed = await asyncio.to_thread(
            _trim_source,
            source,
            session_start_ms=session_start_ms,
            session_end_ms=session_end_ms,
            client_start_date=client_start_date,
            session_id=session_id,
        )
        if trimmed is not None:
            results.append(trimmed)
    return results


__all__ = [
    "ABSOLUTE_TIMESTAMP_THRESHOLD",
    "PathAnonymizer",
    "event_time",
    "relative_time",
    "trim_logs",
    "trim_records",
]
