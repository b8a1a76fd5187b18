"""Command-line helpers for ScreenCam diagnostics."""
from __future__ import annotations

import argparse
import importlib
import json
import os
import shutil
import subprocess
import sys
from typing import Sequence

import psutil

from .capture import platform_capture, resolve_capture_binary
from .version import APP_VERSION

FFMPEG_INSTALL_HINT = (
    "Install FFmpeg (for example `sudo apt install ffmpeg` or `brew install ffmpeg`) "
    "or point SCREENCAM_FFMPEG at an existing binary."
)

MEDIA_PIP_HINT = (
    "Install the media dependencies inside the active environment with "
    "`pip install av numpy simplejpeg`."
)

PSUTIL_PIP_HINT = "Install psutil inside the active environment with `pip install psutil`."


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the diagnostics CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m screen_cam.diagnostics",
        description="ScreenCam diagnostics helpers",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    return parser


def summarise_exception(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def diagnose_capture_binary(timeout: float = 5.0) -> dict[str, object]:
    """Report whether the capture binary can be found and executed."""

    binary = resolve_capture_binary()
    payload: dict[str, object] = {"status": "ok", "binary": binary, "details": []}
    details: list[str] = []
    located = binary if os.path.isabs(binary) else shutil.which(binary)
    if not located or not os.path.exists(located):
        payload["status"] = "error"
        details.append(f"Capture binary {binary!r} not found.")
        payload["details"] = details
        payload["hints"] = [FFMPEG_INSTALL_HINT]
        return payload
    try:
        completed = subprocess.run(
            [located, "-hide_banner", "-version"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        payload["status"] = "error"
        details.append(f"Unable to run {located}: {summarise_exception(exc)}")
        payload["hints"] = [FFMPEG_INSTALL_HINT]
    else:
        first_line = (completed.stdout or "").strip().splitlines()[:1]
        if completed.returncode != 0:
            payload["status"] = "error"
            details.append(f"{located} -version exited with {completed.returncode}.")
        elif first_line:
            payload["version"] = first_line[0]
    payload["details"] = details
    return payload


def diagnose_media_stack() -> dict[str, object]:
    """Return diagnostic details about the Python media and metrics stack."""

    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    versions: dict[str, str] = {}

    def mark_error(detail: str, hint: str) -> None:
        nonlocal status
        status = "error"
        details.append(detail)
        if hint not in hints:
            hints.append(hint)

    modules = (
        ("av", "PyAV", MEDIA_PIP_HINT),
        ("numpy", "NumPy", MEDIA_PIP_HINT),
        ("simplejpeg", "simplejpeg", MEDIA_PIP_HINT),
        ("psutil", "psutil", PSUTIL_PIP_HINT),
    )
    for module_name, friendly, hint in modules:
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError:
            mark_error(f"{friendly} module not found.", hint)
            continue
        except Exception as exc:  # pragma: no cover - depends on runtime environment
            mark_error(f"{friendly} import failed: {summarise_exception(exc)}", hint)
            continue
        version = getattr(module, "__version__", None)
        if isinstance(version, str):
            versions[module_name] = version

    payload: dict[str, object] = {"status": status, "details": details, "versions": versions}
    if "av" in versions:
        from .video_encoding import select_preview_backend

        backend, attempted = select_preview_backend()
        if backend is None:
            payload["status"] = "error"
            details.append(
                "No preview encoder available (attempted: " + ", ".join(attempted) + ")."
            )
        else:
            payload["preview_encoder"] = backend.codec
    if hints:
        payload["hints"] = hints
    return payload


def describe_capture_config(platform: str | None = None) -> dict[str, object]:
    config = platform_capture(platform)
    return {
        "platform": platform or sys.platform,
        "input_format": config.input_format,
        "screen_input": config.screen_input,
        "audio_format": config.audio_format,
        "audio_input": config.audio_input,
    }


def _clamp_percentage(value: float) -> float:
    """Clamp *value* to the 0–100 range."""

    return max(0.0, min(100.0, value))


def collect_system_metrics() -> dict[str, object]:
    """Return a summary of system-level resource usage."""

    payload: dict[str, object] = {}
    cpu: dict[str, object] = {}
    cpu_count = os.cpu_count()
    if isinstance(cpu_count, int) and cpu_count > 0:
        cpu["count"] = cpu_count
    try:
        load_1m, load_5m, load_15m = os.getloadavg()
    except (AttributeError, OSError):  # pragma: no cover - depends on OS support
        pass
    else:
        cpu["load"] = {"1m": load_1m, "5m": load_5m, "15m": load_15m}
        if cpu_count:
            cpu["usage_percent"] = _clamp_percentage((load_1m / cpu_count) * 100.0)
    if cpu:
        payload["cpu"] = cpu
    try:
        memory = psutil.virtual_memory()
    except (OSError, RuntimeError):  # pragma: no cover - platform dependent
        memory = None
    if memory is not None:
        payload["memory"] = {
            "total_bytes": int(memory.total),
            "available_bytes": int(memory.available),
            "used_bytes": int(memory.total - memory.available),
            "used_percent": _clamp_percentage(float(memory.percent)),
        }
    return payload


def _format_bytes(value: int) -> str:
    """Return *value* in bytes as a human-readable string."""

    units = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")
    size = float(value)
    unit_index = 0
    while size >= 1024.0 and unit_index < len(units) - 1:
        size /= 1024.0
        unit_index += 1
    if size >= 100:
        formatted = f"{size:.0f}"
    elif size >= 10:
        formatted = f"{size:.1f}"
    else:
        formatted = f"{size:.2f}"
    return f"{formatted} {units[unit_index]}"


def collect_diagnostics() -> dict[str, object]:
    """Collect diagnostics payload used by both the CLI and API."""

    payload: dict[str, object] = {
        "version": APP_VERSION,
        "capture_binary": diagnose_capture_binary(),
        "media": diagnose_media_stack(),
        "capture_config": describe_capture_config(),
    }
    system_metrics = collect_system_metrics()
    if system_metrics:
        payload["system"] = system_metrics
    return payload


def _print_section(title: str, section: object) -> None:
    if not isinstance(section, dict):
        return
    if section.get("status") == "ok":
        print(f"{title}: OK")
        return
    print(f"{title} issues detected:")
    for detail in section.get("details", []):
        print(f" - {detail}")
    hints = section.get("hints")
    if hints:
        print("Hints:")
        for hint in hints:
            print(f" * {hint}")


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the diagnostics CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    payload = collect_diagnostics()

    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return 0

    print(f"ScreenCam diagnostics (version {APP_VERSION})")
    binary = payload.get("capture_binary", {})
    _print_section("Capture binary", binary)
    if isinstance(binary, dict) and binary.get("version"):
        print(f" - {binary['version']}")
    media = payload.get("media", {})
    _print_section("Media stack", media)
    if isinstance(media, dict) and media.get("preview_encoder"):
        print(f" - Preview encoder: {media['preview_encoder']}")
    capture_config = payload.get("capture_config", {})
    if isinstance(capture_config, dict):
        print(
            f"Capture input: {capture_config.get('input_format')} "
            f"{capture_config.get('screen_input')} on {capture_config.get('platform')}"
        )

    system_metrics = payload.get("system", {})
    if isinstance(system_metrics, dict) and system_metrics:
        print("System resource usage:")
        cpu_metrics = system_metrics.get("cpu")
        if isinstance(cpu_metrics, dict) and cpu_metrics:
            cpu_parts: list[str] = []
            usage_percent = cpu_metrics.get("usage_percent")
            if isinstance(usage_percent, (int, float)):
                cpu_parts.append(f"{usage_percent:.1f}% (1m avg)")
            cpu_count = cpu_metrics.get("count")
            if isinstance(cpu_count, int) and cpu_count > 0:
                cpu_parts.append(f"{cpu_count} cores")
            print(f" - CPU: {', '.join(cpu_parts) if cpu_parts else 'data unavailable'}")
        memory_metrics = system_metrics.get("memory")
        if isinstance(memory_metrics, dict) and memory_metrics:
            used = memory_metrics.get("used_bytes")
            total = memory_metrics.get("total_bytes")
            percent = memory_metrics.get("used_percent")
            parts: list[str] = []
            if isinstance(percent, (int, float)):
                parts.append(f"{percent:.1f}% used")
            if isinstance(used, int) and isinstance(total, int):
                parts.append(f"{_format_bytes(used)} / {_format_bytes(total)}")
            print(f" - Memory: {', '.join(parts) if parts else 'data unavailable'}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m screen_cam.diagnostics`."""

    return run(argv)


__all__ = [
    "build_parser",
    "collect_diagnostics",
    "collect_system_metrics",
    "describe_capture_config",
    "diagnose_capture_binary",
    "diagnose_media_stack",
    "main",
    "run",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
