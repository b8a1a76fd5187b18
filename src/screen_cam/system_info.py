"""Host description attached to recording results."""
from __future__ import annotations

import logging
import os
import platform
import socket
from typing import Any

import psutil

from .version import APP_VERSION

logger = logging.getLogger(__name__)


def _cpu_info() -> dict[str, Any]:
    info: dict[str, Any] = {
        "brand": platform.processor() or platform.machine(),
        "cores": psutil.cpu_count(logical=True) or os.cpu_count() or 0,
        "physical_cores": psutil.cpu_count(logical=False) or 0,
    }
    try:
        frequency = psutil.cpu_freq()
    except (OSError, NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
        frequency = None
    if frequency is not None:
        info["speed_mhz"] = round(frequency.current, 1)
        info["speed_min_mhz"] = round(frequency.min, 1)
        info["speed_max_mhz"] = round(frequency.max, 1)
    return info


def _memory_info() -> dict[str, Any]:
    memory = psutil.virtual_memory()
    swap = psutil.swap_memory()
    return {
        "total": int(memory.total),
        "available": int(memory.available),
        "used": int(memory.used),
        "free": int(memory.free),
        "percent": float(memory.percent),
        "swap_total": int(swap.total),
        "swap_used": int(swap.used),
        "swap_free": int(swap.free),
    }


def _os_info() -> dict[str, Any]:
    uname = platform.uname()
    return {
        "platform": uname.system.lower(),
        "release": uname.release,
        "version": uname.version,
        "arch": uname.machine,
        "hostname": socket.gethostname(),
        "python": platform.python_version(),
    }


def describe_host() -> dict[str, Any]:
    """Collect CPU, memory and OS details; unavailable sections are empty."""

    sections = {"cpu": _cpu_info, "mem": _memory_info, "os": _os_info}
    description: dict[str, Any] = {"app_version": APP_VERSION}
    for name, collector in sections.items():
        try:
            description[name] = collector()
        except (OSError, RuntimeError, psutil.Error) as exc:
            logger.debug("Unable to collect %s information: %s", name, exc)
            description[name] = {}
    try:
        description["boot_time"] = int(psutil.boot_time() * 1000)
    except (OSError, RuntimeError, psutil.Error):  # pragma: no cover - platform dependent
        pass
    return description


__all__ = ["describe_host"]
