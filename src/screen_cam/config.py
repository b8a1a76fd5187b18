"""Configuration management for ScreenCam."""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Sequence

from .log_sources import WebPattern

logger = logging.getLogger(__name__)

CONFIG_ENV = "SCREENCAM_CONFIG"
RECORDINGS_DIR_ENV = "SCREENCAM_RECORDINGS_DIR"

DEFAULT_CONFIG_PATH = Path("data/config.json")
DEFAULT_RECORDINGS_DIR = Path("tmp/recordings")
DEFAULT_TELEMETRY_INTERVAL = 5.0


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Default options used when a recording is started without overrides."""

    fps: int = 10
    include_audio: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.fps, bool) or not isinstance(self.fps, int):
            raise ValueError("Capture fps must be an integer")
        if self.fps < 1 or self.fps > 60:
            raise ValueError("Capture fps must be between 1 and 60")
        object.__setattr__(self, "include_audio", bool(self.include_audio))

    def to_dict(self) -> Dict[str, object]:
        return {"fps": int(self.fps), "include_audio": bool(self.include_audio)}


DEFAULT_CAPTURE_SETTINGS = CaptureSettings()


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override and override.strip():
        return Path(override.strip())
    return DEFAULT_CONFIG_PATH


def _parse_capture_settings(value: Any, *, default: CaptureSettings) -> CaptureSettings:
    if isinstance(value, CaptureSettings):
        return value
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Capture settings must be an object")
    fps_raw = value.get("fps", default.fps)
    try:
        fps_float = float(fps_raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("Capture fps must be numeric") from exc
    if not math.isfinite(fps_float) or not fps_float.is_integer():
        raise ValueError("Capture fps must be a whole number")
    include_audio = value.get("include_audio", default.include_audio)
    if not isinstance(include_audio, bool):
        raise ValueError("include_audio must be a boolean")
    return CaptureSettings(fps=int(fps_float), include_audio=include_audio)


def _parse_log_files(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ValueError("Tracked log files must be a list of paths")
    paths: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValueError("Tracked log file entries must be non-empty strings")
        normalised = os.path.abspath(os.path.expanduser(item.strip()))
        if normalised not in paths:
            paths.append(normalised)
    return paths


def _parse_web_patterns(value: Any) -> list[WebPattern]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise ValueError("Web patterns must be a list")
    patterns: list[WebPattern] = []
    for item in value:
        if isinstance(item, WebPattern):
            entry = item
        elif isinstance(item, Mapping):
            entry = WebPattern.from_mapping(item)
        else:
            raise ValueError("Web pattern entries must be objects")
        patterns = [existing for existing in patterns if existing.name != entry.name]
        patterns.append(entry)
    return patterns


def _parse_interval(value: Any, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError("Telemetry interval must be numeric")
    try:
        interval = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("Telemetry interval must be numeric") from exc
    if not math.isfinite(interval) or interval <= 0:
        raise ValueError("Telemetry interval must be a positive number")
    return interval


def _parse_directory(value: Any, *, default: Path) -> Path:
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Recordings directory must be a non-empty string")
    return Path(value.strip()).expanduser()


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str | None = None) -> None:
        self._path = Path(config_path) if config_path is not None else default_config_path()
        self._lock = Lock()
        self._ensure_parent()
        (
            self._capture,
            self._recordings_dir,
            self._log_files,
            self._web_patterns,
            self._telemetry_interval,
        ) = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _defaults(self) -> tuple[CaptureSettings, Path, list[str], list[WebPattern], float]:
        return (
            DEFAULT_CAPTURE_SETTINGS,
            DEFAULT_RECORDINGS_DIR,
            [],
            [],
            DEFAULT_TELEMETRY_INTERVAL,
        )

    def _load(self) -> tuple[CaptureSettings, Path, list[str], list[WebPattern], float]:
        if not self._path.exists():
            return self._defaults()
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            capture = _parse_capture_settings(
                payload.get("capture"), default=DEFAULT_CAPTURE_SETTINGS
            )
            recordings_dir = _parse_directory(
                payload.get("recordings_dir"), default=DEFAULT_RECORDINGS_DIR
            )
            log_files = _parse_log_files(payload.get("log_files"))
            web_patterns = _parse_web_patterns(payload.get("web_patterns"))
            interval = _parse_interval(
                payload.get("telemetry_interval"), default=DEFAULT_TELEMETRY_INTERVAL
            )
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable configuration %s: %s", self._path, exc)
            return self._defaults()
        return capture, recordings_dir, log_files, web_patterns, interval

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "capture": self._capture.to_dict(),
            "recordings_dir": str(self._recordings_dir),
            "log_files": list(self._log_files),
            "web_patterns": [pattern.to_dict() for pattern in self._web_patterns],
            "telemetry_interval": self._telemetry_interval,
        }
        self._path.write_text(json.dumps(payload, indent=2))

    # ------------------------------ capture --------------------------------
    def get_capture_settings(self) -> CaptureSettings:
        with self._lock:
            return self._capture

    def set_capture_settings(self, data: Mapping[str, Any] | CaptureSettings) -> CaptureSettings:
        settings = _parse_capture_settings(data, default=self._capture)
        with self._lock:
            self._capture = settings
            self._save()
        return settings

    def get_recordings_dir(self) -> Path:
        override = os.environ.get(RECORDINGS_DIR_ENV)
        if override and override.strip():
            return Path(override.strip()).expanduser()
        with self._lock:
            return self._recordings_dir

    def set_recordings_dir(self, value: Any) -> Path:
        directory = _parse_directory(value, default=self._recordings_dir)
        with self._lock:
            self._recordings_dir = directory
            self._save()
        return directory

    # ------------------------------ log files ------------------------------
    def get_log_files(self) -> list[str]:
        with self._lock:
            return list(self._log_files)

    def add_log_file(self, path: str) -> list[str]:
        (normalised,) = _parse_log_files([path])
        with self._lock:
            if normalised not in self._log_files:
                self._log_files.append(normalised)
                self._save()
            return list(self._log_files)

    def remove_log_file(self, path: str) -> list[str]:
        (normalised,) = _parse_log_files([path])
        with self._lock:
            if normalised in self._log_files:
                self._log_files.remove(normalised)
                self._save()
            return list(self._log_files)

    # ------------------------------ web patterns ---------------------------
    def get_web_patterns(self) -> list[WebPattern]:
        with self._lock:
            return list(self._web_patterns)

    def add_web_pattern(self, data: Mapping[str, Any]) -> list[WebPattern]:
        """Add or replace (by name) a tracked URL pattern."""

        (entry,) = _parse_web_patterns([data])
        with self._lock:
            self._web_patterns = [
                existing for existing in self._web_patterns if existing.name != entry.name
            ]
            self._web_patterns.append(entry)
            self._save()
            return list(self._web_patterns)

    def remove_web_pattern(self, name: str) -> list[WebPattern]:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Web pattern name must be a non-empty string")
        wanted = name.strip()
        with self._lock:
            remaining = [entry for entry in self._web_patterns if entry.name != wanted]
            if len(remaining) != len(self._web_patterns):
                self._web_patterns = remaining
                self._save()
            return list(self._web_patterns)

    # ------------------------------ telemetry ------------------------------
    def get_telemetry_interval(self) -> float:
        with self._lock:
            return self._telemetry_interval

    def set_telemetry_interval(self, value: Any) -> float:
        interval = _parse_interval(value, default=self._telemetry_interval)
        with self._lock:
            self._telemetry_interval = interval
            self._save()
        return interval


__all__ = [
    "CONFIG_ENV",
    "CaptureSettings",
    "ConfigManager",
    "DEFAULT_CAPTURE_SETTINGS",
    "DEFAULT_RECORDINGS_DIR",
    "DEFAULT_TELEMETRY_INTERVAL",
    "RECORDINGS_DIR_ENV",
    "default_config_path",
]
