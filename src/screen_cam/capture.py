"""Screen capture process supervision and session finalization."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Sequence

from . import media, system_info
from .config import ConfigManager, DEFAULT_CAPTURE_SETTINGS, DEFAULT_RECORDINGS_DIR
from .journal import SessionJournal
from .log_sources import LogSourceStatus, LogsTrackerManager
from .session import Session, SessionError, SessionSlot, SessionStatus, NotActive
from .telemetry import TelemetryReport, TelemetrySampler
from .trimming import trim_logs
from .video_encoding import CaptureProfile, DEFAULT_CAPTURE_PROFILE

logger = logging.getLogger(__name__)

CAPTURE_BINARY_ENV = "SCREENCAM_FFMPEG"

DEFAULT_GRACE_PERIOD = 2.0
DEFAULT_TERMINATE_TIMEOUT = 5.0
DEFAULT_KILL_TIMEOUT = 5.0
DEFAULT_SETTLE_DELAY = 1.0
DEFAULT_FINALIZE_ATTEMPTS = 3
DEFAULT_FINALIZE_BACKOFF = 2.0
DEFAULT_FINALIZE_TIMEOUT = 120.0

_OUTPUT_SPLIT = re.compile(r"[\r\n]+")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CaptureError(SessionError):
    """A capture step failed; ``step`` and ``path`` support manual recovery."""

    def __init__(self, message: str, *, step: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.path = path

    def to_dict(self) -> dict[str, object]:
        return {
            "error": str(self),
            "step": self.step,
            "path": str(self.path) if self.path is not None else None,
        }


class CaptureLaunchError(CaptureError):
    """The capture process could not be started."""


class CaptureEmpty(CaptureError):
    """The capture process left no usable output."""


class FinalizationFailed(CaptureError):
    """Every finalization attempt failed; the temporary capture is preserved."""

    def __init__(self, message: str, *, temp_path: Path, attempts: int) -> None:
        super().__init__(message, step="finalize", path=temp_path)
        self.temp_path = temp_path
        self.attempts = attempts


class PreviewGenerationFailed(CaptureError):
    """Preview assets failed; the finalized recording in ``result`` is intact."""

    def __init__(self, message: str, *, result: "RecordingResult") -> None:
        super().__init__(message, step="preview", path=result.output_path)
        self.result = result


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PlatformCapture:
    """Input device selection for one host platform."""

    input_format: str
    screen_input: str
    audio_format: str
    audio_input: str
    extra_input_args: tuple[str, ...] = ()


_PLATFORM_CAPTURE: dict[str, PlatformCapture] = {
    "darwin": PlatformCapture(
        input_format="avfoundation",
        screen_input="1:none",
        audio_format="avfoundation",
        audio_input="1",
        extra_input_args=(
            "-capture_cursor",
            "1",
            "-capture_mouse_clicks",
            "1",
            "-pixel_format",
            "yuyv422",
            "-probesize",
            "42M",
            "-analyzeduration",
            "2147483647",
        ),
    ),
    "win32": PlatformCapture(
        input_format="gdigrab",
        screen_input="desktop",
        audio_format="dshow",
        audio_input="audio=virtual-audio-capturer",
    ),
    "linux": PlatformCapture(
        input_format="x11grab",
        screen_input=":0.0",
        audio_format="pulse",
        audio_input="default",
    ),
}


def platform_capture(platform: str | None = None) -> PlatformCapture:
    """Return the capture configuration for *platform* (macOS when unknown)."""

    name = platform or sys.platform
    if name.startswith("linux"):
        name = "linux"
    return _PLATFORM_CAPTURE.get(name, _PLATFORM_CAPTURE["darwin"])


def resolve_capture_binary() -> str:
    override = os.environ.get(CAPTURE_BINARY_ENV)
    if override and override.strip():
        return override.strip()
    return shutil.which("ffmpeg") or "ffmpeg"


def build_capture_command(
    binary: str,
    temp_path: Path,
    *,
    fps: int,
    include_audio: bool,
    platform: str | None = None,
    profile: CaptureProfile = DEFAULT_CAPTURE_PROFILE,
) -> list[str]:
    config = platform_capture(platform)
    command = [binary, "-f", config.input_format, *config.extra_input_args]
    command += ["-framerate", str(int(fps)), "-i", config.screen_input]
    if include_audio:
        command += ["-f", config.audio_format, "-i", config.audio_input]
    command += profile.capture_output_args(fps, include_audio=include_audio)
    command += ["-y", str(temp_path)]
    return command


def build_finalize_command(
    binary: str,
    temp_path: Path,
    output_path: Path,
    *,
    profile: CaptureProfile = DEFAULT_CAPTURE_PROFILE,
) -> list[str]:
    return [
        binary,
        "-f",
        profile.container,
        "-i",
        str(temp_path),
        *profile.finalize_args(),
        "-y",
        str(output_path),
    ]


def default_output_path(
    directory: Path, *, profile: CaptureProfile = DEFAULT_CAPTURE_PROFILE
) -> Path:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    stamp = re.sub(r"[:.+]", "-", stamp)
    return directory / f"recording-{stamp}{profile.extension}"


# ---------------------------------------------------------------------------
# Process plumbing
# ---------------------------------------------------------------------------


class CaptureProcess(Protocol):
    """Subset of :class:`asyncio.subprocess.Process` used by the supervisor."""

    pid: int
    returncode: int | None
    stdin: Any
    stderr: Any

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


ProcessFactory = Callable[[Sequence[str]], Awaitable[CaptureProcess]]
CommandRunner = Callable[[Sequence[str], float], Awaitable[tuple[int | None, str]]]
AssetBuilder = Callable[[Path, Path], object]


async def spawn_capture_process(command: Sequence[str]) -> CaptureProcess:
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


async def run_command(command: Sequence[str], timeout: float) -> tuple[int | None, str]:
    """Run *command* to completion; returns ``(exit code, combined output)``."""

    process = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        output, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return None, f"timed out after {timeout:.1f}s"
    return process.returncode, output.decode("utf-8", errors="replace")


def _non_empty(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except OSError:
        return False


def _output_tail(output: str, limit: int = 400) -> str:
    text = output.strip()
    return text if len(text) <= limit else "..." + text[-limit:]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RecordingResult:
    """Everything produced by one completed session."""

    session_id: str
    output_path: Path
    duration_ms: int
    file_size: int
    client_start_date: int
    snapshot_path: Path | None = None
    preview_path: Path | None = None
    logs: list[LogSourceStatus] = field(default_factory=list)
    performance: TelemetryReport | None = None
    system: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "output_path": str(self.output_path),
            "preview_path": str(self.preview_path) if self.preview_path else None,
            "snapshot_path": str(self.snapshot_path) if self.snapshot_path else None,
            "duration_ms": self.duration_ms,
            "file_size": self.file_size,
            "client_start_date": self.client_start_date,
            "logs": [source.to_dict() for source in self.logs],
            "performance": self.performance.to_dict() if self.performance else None,
            "system": dict(self.system),
        }


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class CaptureSupervisor:
    """Own the capture process and everything scoped to its session."""

    def __init__(
        self,
        *,
        slot: SessionSlot | None = None,
        telemetry: TelemetrySampler | None = None,
        logs: LogsTrackerManager | None = None,
        journal: SessionJournal | None = None,
        config: ConfigManager | None = None,
        binary: str | None = None,
        platform: str | None = None,
        profile: CaptureProfile = DEFAULT_CAPTURE_PROFILE,
        process_factory: ProcessFactory | None = None,
        runner: CommandRunner | None = None,
        snapshot_builder: AssetBuilder | None = None,
        preview_builder: AssetBuilder | None = None,
        host_info: Callable[[], dict[str, Any]] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        finalize_attempts: int = DEFAULT_FINALIZE_ATTEMPTS,
        finalize_backoff: float = DEFAULT_FINALIZE_BACKOFF,
        finalize_timeout: float = DEFAULT_FINALIZE_TIMEOUT,
    ) -> None:
        if finalize_attempts < 1:
            raise ValueError("finalize_attempts must be at least 1")
        self._slot = slot or SessionSlot()
        self._telemetry = telemetry
        self._logs = logs
        self._journal = journal
        self._config = config
        self._binary = binary
        self._platform = platform
        self._profile = profile
        self._process_factory = process_factory or spawn_capture_process
        self._runner = runner or run_command
        self._snapshot_builder = snapshot_builder or media.create_snapshot
        self._preview_builder = preview_builder or media.create_preview_clip
        self._host_info = host_info or system_info.describe_host
        self._sleep = sleep
        self._grace_period = grace_period
        self._terminate_timeout = terminate_timeout
        self._kill_timeout = kill_timeout
        self._settle_delay = settle_delay
        self._finalize_attempts = int(finalize_attempts)
        self._finalize_backoff = finalize_backoff
        self._finalize_timeout = finalize_timeout
        self._process: CaptureProcess | None = None
        self._monitor_task: asyncio.Task[None] | None = None

    # ------------------------------ properties -----------------------------
    @property
    def slot(self) -> SessionSlot:
        return self._slot

    @property
    def binary(self) -> str:
        if self._binary is None:
            self._binary = resolve_capture_binary()
        return self._binary

    # ------------------------------ queries --------------------------------
    def status(self) -> dict[str, object]:
        session = self._slot.peek()
        if session is None:
            return {"is_recording": False}
        return {
            "is_recording": True,
            "duration_ms": session.duration_ms,
            "output_path": str(session.output_path),
        }

    # ------------------------------ start ----------------------------------
    async def start(
        self,
        *,
        fps: int | None = None,
        include_audio: bool | None = None,
        output_path: Path | str | None = None,
    ) -> Session:
        """Launch the capture process and the session's samplers.

        Raises :class:`AlreadyActive` while another session exists.
        """

        defaults = (
            self._config.get_capture_settings()
            if self._config is not None
            else DEFAULT_CAPTURE_SETTINGS
        )
        fps_value = defaults.fps if fps is None else fps
        if isinstance(fps_value, bool) or not isinstance(fps_value, int):
            raise ValueError("fps must be an integer")
        if fps_value < 1 or fps_value > 60:
            raise ValueError("fps must be between 1 and 60")
        audio = defaults.include_audio if include_audio is None else bool(include_audio)
        if output_path is not None:
            output = Path(output_path)
        else:
            directory = (
                self._config.get_recordings_dir()
                if self._config is not None
                else DEFAULT_RECORDINGS_DIR
            )
            output = default_output_path(directory, profile=self._profile)
        temp = output.parent / f"temp-{int(time.time() * 1000)}{self._profile.extension}"

        session = self._slot.acquire(Session(output_path=output, temp_path=temp))
        command = build_capture_command(
            self.binary,
            temp,
            fps=fps_value,
            include_audio=audio,
            platform=self._platform,
            profile=self._profile,
        )
        logger.info(
            "Starting capture for session %s (fps=%d, audio=%s) into %s",
            session.id,
            fps_value,
            audio,
            temp,
        )
        logger.debug("Capture command: %s", " ".join(command))
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            process = await self._process_factory(command)
        except OSError as exc:
            session.status = SessionStatus.FAILED
            self._slot.release(session)
            self._record(
                session,
                "failed",
                f"Capture process failed to start: {exc}",
                step="launch",
                path=str(temp),
            )
            raise CaptureLaunchError(
                f"Unable to launch {command[0]}: {exc}", step="launch", path=temp
            ) from exc
        except BaseException:
            self._slot.release(session)
            raise

        session.status = SessionStatus.RECORDING
        self._process = process
        if getattr(process, "stderr", None) is not None:
            self._monitor_task = asyncio.create_task(self._monitor_output(process))
        self._start_trackers(session)
        self._record(
            session,
            "started",
            "Recording started",
            pid=getattr(process, "pid", None),
            fps=fps_value,
            include_audio=audio,
            output_path=str(output),
        )
        logger.info("Capture process started (pid %s)", getattr(process, "pid", "?"))
        return session

    # ------------------------------ stop -----------------------------------
    async def stop(self) -> RecordingResult:
        """Halt capture, finalize the recording and assemble the result.

        The session slot is released whatever the outcome.
        """

        session = self._slot.current
        if session.status is not SessionStatus.RECORDING:
            raise NotActive(f"Session {session.id} is already {session.status.value}")
        session.status = SessionStatus.FINALIZING
        end_ms = session.mark_ended()
        duration_ms = end_ms - session.start_ms
        logger.info("Stopping session %s after %.1fs", session.id, duration_ms / 1000)
        process = self._process
        preview_failure: str | None = None
        try:
            telemetry_report: TelemetryReport | None = None
            raw_logs: list[LogSourceStatus] = []
            try:
                if process is not None:
                    await self._halt(process)
                await self._stop_monitor()
                await self._sleep(self._settle_delay)
                if not _non_empty(session.temp_path):
                    raise CaptureEmpty(
                        f"Recording file {session.temp_path} is empty or missing",
                        step="verify",
                        path=session.temp_path,
                    )
                await self._finalize(session)
                self._remove_temp(session)
            finally:
                telemetry_report, raw_logs = await self._stop_trackers(session)

            logs = await trim_logs(raw_logs, 0, duration_ms, session.start_ms, session.id)
            result = RecordingResult(
                session_id=session.id,
                output_path=session.output_path,
                duration_ms=duration_ms,
                file_size=session.output_path.stat().st_size,
                client_start_date=session.start_ms,
                logs=logs,
                performance=telemetry_report,
                system=await self._describe_host(),
            )
            preview_failure = await self._build_previews(session, result)
            if preview_failure is None:
                session.status = SessionStatus.COMPLETE
                self._record(
                    session,
                    "completed",
                    "Recording completed",
                    output_path=str(result.output_path),
                    file_size=result.file_size,
                )
            else:
                session.status = SessionStatus.FAILED
                self._record(
                    session,
                    "failed",
                    preview_failure,
                    step="preview",
                    path=str(result.output_path),
                )
        except CaptureError as exc:
            session.status = SessionStatus.FAILED
            logger.error("Session %s failed at %s: %s", session.id, exc.step, exc)
            self._record(
                session,
                "failed",
                str(exc),
                step=exc.step,
                path=str(exc.path) if exc.path else None,
            )
            raise
        except BaseException as exc:
            session.status = SessionStatus.FAILED
            self._record(session, "failed", str(exc) or type(exc).__name__, step="stop")
            raise
        finally:
            self._process = None
            self._slot.release(session)
        if preview_failure is not None:
            raise PreviewGenerationFailed(preview_failure, result=result)
        logger.info("Session %s complete: %s", session.id, result.output_path)
        return result

    async def abort(self) -> None:
        """Kill capture and stop samplers without finalizing; used at shutdown."""

        session = self._slot.peek()
        if session is None:
            return
        process = self._process
        try:
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await self._wait_exit(process, self._kill_timeout)
            await self._stop_monitor()
            await self._stop_trackers(session)
        finally:
            session.status = SessionStatus.FAILED
            self._process = None
            self._slot.release(session)
            self._record(session, "aborted", "Recording aborted", path=str(session.temp_path))
            logger.warning("Session %s aborted; capture left at %s", session.id, session.temp_path)

    # ----------------------------- implementation --------------------------
    def _start_trackers(self, session: Session) -> None:
        workdir = session.output_path.parent / session.id
        if self._telemetry is not None:
            try:
                self._telemetry.start(workdir)
            except Exception:
                logger.exception("Unable to start telemetry for session %s", session.id)
        if self._logs is not None:
            files = self._config.get_log_files() if self._config is not None else []
            patterns = self._config.get_web_patterns() if self._config is not None else []
            try:
                self._logs.start_new(session.id, workdir, files=files, web_patterns=patterns)
            except Exception:
                logger.exception("Unable to start log tracking for session %s", session.id)

    async def _stop_trackers(
        self, session: Session
    ) -> tuple[TelemetryReport | None, list[LogSourceStatus]]:
        report: TelemetryReport | None = None
        statuses: list[LogSourceStatus] = []
        if self._telemetry is not None and self._telemetry.is_running:
            try:
                report = await self._telemetry.stop()
            except Exception:
                logger.exception("Unable to stop telemetry for session %s", session.id)
        if self._logs is not None:
            try:
                statuses = self._logs.stop(session.id)
            except Exception:
                logger.exception("Unable to stop log tracking for session %s", session.id)
        return report, statuses

    async def _halt(self, process: CaptureProcess) -> None:
        if process.returncode is not None:
            return
        stdin = getattr(process, "stdin", None)
        if stdin is not None:
            logger.debug("Sending quit to capture process")
            try:
                stdin.write(b"q")
                await stdin.drain()
                stdin.close()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.debug("Capture process stdin closed: %s", exc)
        if await self._wait_exit(process, self._grace_period):
            return
        logger.warning("Capture process ignored quit; sending SIGTERM")
        try:
            process.terminate()
        except ProcessLookupError:
            return
        if await self._wait_exit(process, self._terminate_timeout):
            return
        logger.warning("Capture process ignored SIGTERM; sending SIGKILL")
        try:
            process.kill()
        except ProcessLookupError:
            return
        if not await self._wait_exit(process, self._kill_timeout):
            logger.error("Capture process %s did not exit after SIGKILL", process.pid)

    @staticmethod
    async def _wait_exit(process: CaptureProcess, timeout: float) -> bool:
        if process.returncode is not None:
            return True
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _finalize(self, session: Session) -> int:
        command = build_finalize_command(
            self.binary, session.temp_path, session.output_path, profile=self._profile
        )
        for attempt in range(1, self._finalize_attempts + 1):
            await self._sleep(attempt * self._finalize_backoff)
            logger.debug("Finalization attempt %d of %d", attempt, self._finalize_attempts)
            try:
                code, output = await self._runner(command, self._finalize_timeout)
            except OSError as exc:
                code, output = None, str(exc)
            if code == 0 and _non_empty(session.output_path):
                logger.info("Finalized recording on attempt %d", attempt)
                return attempt
            logger.warning(
                "Finalization attempt %d of %d failed (exit %s): %s",
                attempt,
                self._finalize_attempts,
                code,
                _output_tail(output),
            )
            self._record(
                session,
                "finalization_attempt_failed",
                f"Attempt {attempt} failed",
                attempt=attempt,
                exit_code=code,
            )
        raise FinalizationFailed(
            f"Failed to finalize recording after {self._finalize_attempts} attempts; "
            f"capture preserved at {session.temp_path}",
            temp_path=session.temp_path,
            attempts=self._finalize_attempts,
        )

    @staticmethod
    def _remove_temp(session: Session) -> None:
        try:
            session.temp_path.unlink()
        except OSError as exc:
            logger.warning("Unable to delete temporary capture %s: %s", session.temp_path, exc)

    async def _describe_host(self) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(self._host_info)
        except Exception as exc:
            logger.warning("Unable to describe host: %s", exc)
            return {}

    async def _build_previews(self, session: Session, result: RecordingResult) -> str | None:
        output = session.output_path
        snapshot_path = output.with_suffix(".jpg")
        preview_path = output.with_name(f"{output.stem}.preview.mp4")
        snapshot, preview = await asyncio.gather(
            asyncio.to_thread(self._snapshot_builder, output, snapshot_path),
            asyncio.to_thread(self._preview_builder, output, preview_path),
            return_exceptions=True,
        )
        failures: list[str] = []
        if isinstance(snapshot, BaseException):
            failures.append(f"snapshot: {snapshot}")
        else:
            result.snapshot_path = session.snapshot_path = snapshot_path
        if isinstance(preview, BaseException):
            failures.append(f"preview: {preview}")
        else:
            result.preview_path = session.preview_path = preview_path
        if not failures:
            return None
        message = "Preview generation failed (" + "; ".join(failures) + ")"
        logger.warning("Session %s: %s", session.id, message)
        return message

    async def _monitor_output(self, process: CaptureProcess) -> None:
        reader = process.stderr
        buffer = ""
        try:
            while True:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="replace")
                *lines, buffer = _OUTPUT_SPLIT.split(buffer)
                for line in lines:
                    _log_capture_line(line)
            if buffer:
                _log_capture_line(buffer)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - defensive guard
            logger.debug("Capture output monitor stopped: %s", exc)

    async def _stop_monitor(self) -> None:
        task = self._monitor_task
        self._monitor_task = None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=1.0)
        except asyncio.TimeoutError:
            task.cancel()
        except asyncio.CancelledError:
            pass

    def _record(self, session: Session, event: str, message: str, **details: object) -> None:
        if self._journal is None:
            return
        try:
            self._journal.record(session.id, event, message, **details)
        except Exception:  # pragma: no cover - journal is best effort
            logger.exception("Unable to journal %s for session %s", event, session.id)


def _log_capture_line(line: str) -> None:
    text = line.strip()
    if not text:
        return
    if "frame=" in text or "time=" in text:
        logger.debug("Capture progress: %s", text)
    elif "error" in text.lower():
        logger.warning("Capture warning: %s", text)
    else:
        logger.debug("Capture: %s", text)


__all__ = [
    "CAPTURE_BINARY_ENV",
    "CaptureEmpty",
    "CaptureError",
    "CaptureLaunchError",
    "CaptureProcess",
    "CaptureSupervisor",
    "FinalizationFailed",
    "PlatformCapture",
    "PreviewGenerationFailed",
    "RecordingResult",
    "build_capture_command",
    "build_finalize_command",
    "default_output_path",
    "platform_capture",
    "resolve_capture_binary",
    "run_command",
    "spawn_capture_process",
]
