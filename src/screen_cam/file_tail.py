"""Follow appended lines in local log files."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque

from .events import RawEvent, now_ms, parse_log_line

logger = logging.getLogger(__name__)

EventCallback = Callable[[RawEvent], None]


@dataclass(slots=True)
class _ReadResult:
    lines: list[str]
    offset: int
    inode: int | None
    partial: str


def _read_appended(path: Path, offset: int, inode: int | None, partial: str) -> _ReadResult:
    """Read everything appended to *path* since *offset*.

    Rotation (inode change) and truncation (file shorter than the offset)
    restart reading from the beginning of the current file.
    """

    try:
        stat = path.stat()
    except FileNotFoundError:
        return _ReadResult([], offset, inode, partial)
    if inode is not None and stat.st_ino != inode:
        logger.info("Log file rotated: %s", path)
        offset = 0
        partial = ""
    elif stat.st_size < offset:
        logger.info("Log file truncated: %s", path)
        offset = 0
        partial = ""
    if stat.st_size == offset:
        return _ReadResult([], offset, stat.st_ino, partial)
    with path.open("r", encoding="utf-8", errors="replace", newline="") as handle:
        handle.seek(offset)
        data = handle.read()
        new_offset = handle.tell()
    data = partial + data
    pieces = data.splitlines(keepends=True)
    remainder = ""
    if pieces and not pieces[-1].endswith(("\n", "\r")):
        remainder = pieces.pop()
    lines = [piece.strip() for piece in pieces]
    return _ReadResult([line for line in lines if line], new_offset, stat.st_ino, remainder)


class FileTail:
    """Emit an event for every complete line appended to one file."""

    def __init__(
        self,
        path: Path | str,
        callback: EventCallback,
        *,
        poll_interval: float = 0.25,
        from_end: bool = True,
        source_id: str | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._path = Path(path)
        self._callback = callback
        self._poll_interval = float(poll_interval)
        self._from_end = from_end
        self._source_id = source_id or str(self._path)
        self._offset = 0
        self._inode: int | None = None
        self._partial = ""
        self._primed = False
        self._task: asyncio.Task[None] | None = None
        self._event_times: Deque[float] = deque()
        self.total_events = 0

    # ------------------------------ properties -----------------------------
    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------ control --------------------------------
    def prime(self) -> None:
        """Record the starting offset without launching the polling task."""

        stat = self._path.stat()
        self._inode = stat.st_ino
        self._offset = stat.st_size if self._from_end else 0
        self._partial = ""
        self._primed = True

    def start(self) -> None:
        """Begin polling in the running event loop.

        Raises :class:`FileNotFoundError` when the file does not exist.
        """

        if self._task is not None:
            return
        if not self._primed:
            self.prime()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.debug("Started tailing %s", self._path)

    def close(self) -> None:
        """Stop polling without waiting for the task to unwind."""

        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        self._event_times.clear()

    async def aclose(self) -> None:
        task = self._task
        self.close()
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> int:
        """Read and emit any new complete lines. Returns the emitted count."""

        if not self._primed:
            self.prime()
        position = (self._offset, self._inode)
        result = await asyncio.to_thread(
            _read_appended, self._path, self._offset, self._inode, self._partial
        )
        if (self._offset, self._inode) != position:
            # drain() consumed these lines while the read was in flight
            return 0
        return self._apply(result)

    def drain(self) -> int:
        """Emit lines appended since the last poll without waiting for the next one."""

        if not self._primed:
            return 0
        try:
            result = _read_appended(self._path, self._offset, self._inode, self._partial)
        except OSError as exc:
            logger.warning("Unable to drain %s: %s", self._path, exc)
            return 0
        return self._apply(result)

    def stats(self) -> dict[str, object]:
        """Return event counters; ``count`` covers the last minute only."""

        cutoff = time.monotonic() - 60.0
        while self._event_times and self._event_times[0] < cutoff:
            self._event_times.popleft()
        return {
            "item": str(self._path),
            "count": len(self._event_times),
            "total_events": self.total_events,
            "is_active": self.is_running,
        }

    # ----------------------------- implementation --------------------------
    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except OSError as exc:
                logger.warning("Unable to read %s: %s", self._path, exc)
            await asyncio.sleep(self._poll_interval)

    def _apply(self, result: _ReadResult) -> int:
        self._offset = result.offset
        self._inode = result.inode
        self._partial = result.partial
        for line in result.lines:
            self._emit(line)
        return len(result.lines)

    def _emit(self, line: str) -> None:
        event = parse_log_line(line, source_id=self._source_id, received_at=now_ms())
        self._event_times.append(time.monotonic())
        self.total_events += 1
        try:
            self._callback(event)
        except Exception:
            logger.exception("Log callback failed for %s", self._path)


@dataclass
class _TailEntry:
    tail: FileTail
    callbacks: list[EventCallback]


class FileTailManager:
    """Share a single :class:`FileTail` between subscribers of the same path."""

    def __init__(self, *, poll_interval: float = 0.25) -> None:
        self._poll_interval = poll_interval
        self._by_path: dict[str, _TailEntry] = {}

    def subscribe(self, path: Path | str, callback: EventCallback) -> Callable[[], None]:
        key = os.path.abspath(os.fspath(path))
        entry = self._by_path.get(key)
        if entry is None:
            tail = FileTail(
                key,
                lambda event, _key=key: self._dispatch(_key, event),
                poll_interval=self._poll_interval,
            )
            tail.start()
            entry = _TailEntry(tail=tail, callbacks=[])
            self._by_path[key] = entry
            logger.debug("Created file tail for %s", key)
        entry.callbacks.append(callback)
        return lambda: self.unsubscribe(key, callback)

    def unsubscribe(self, path: Path | str, callback: EventCallback) -> None:
        key = os.path.abspath(os.fspath(path))
        entry = self._by_path.get(key)
        if entry is None:
            return
        entry.callbacks = [cb for cb in entry.callbacks if cb is not callback]
        if not entry.callbacks:
            entry.tail.close()
            del self._by_path[key]
            logger.debug("Destroyed file tail for %s", key)

    def drain(self, path: Path | str) -> int:
        """Deliver pending lines of *path* to its subscribers immediately."""

        entry = self._by_path.get(os.path.abspath(os.fspath(path)))
        return entry.tail.drain() if entry is not None else 0

    def tail_for(self, path: Path | str) -> FileTail | None:
        entry = self._by_path.get(os.path.abspath(os.fspath(path)))
        return entry.tail if entry is not None else None

    def stats(self) -> list[dict[str, object]]:
        return [
            {**entry.tail.stats(), "callbacks": len(entry.callbacks)}
            for entry in self._by_path.values()
        ]

    def destroy(self) -> None:
        for entry in self._by_path.values():
            entry.tail.close()
        self._by_path.clear()

    def _dispatch(self, key: str, event: RawEvent) -> None:
        entry = self._by_path.get(key)
        if entry is None:
            return
        for callback in list(entry.callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("File tail subscriber failed for %s", key)


__all__ = ["FileTail", "FileTailManager"]
