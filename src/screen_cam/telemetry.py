"""Periodic process, system and network sampling for recording sessions."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

import psutil

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
SAMPLES_FILENAME = "performance.jsonl"
_MEGABYTE = 1024 * 1024


class ProbeUnavailable(RuntimeError):
    """Raised when a metric source cannot be read on this host."""


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ProcessReading:
    cpu_percent: float = 0.0
    memory_bytes: int = 0


@dataclass(slots=True)
class SystemReading:
    total_memory: int = 0
    free_memory: int = 0
    memory_percent: float = 0.0
    cpu_count: int = 0


@dataclass(slots=True)
class NetworkCounters:
    bytes_in: int
    bytes_out: int


@dataclass(slots=True)
class NetworkReading:
    bytes_in: int = 0
    bytes_out: int = 0
    in_rate: float = 0.0
    out_rate: float = 0.0
    in_rate_mbps: float = 0.0
    out_rate_mbps: float = 0.0


@dataclass(slots=True)
class PerformanceSample:
    """One telemetry tick. Failed probes contribute zeroed readings."""

    timestamp: int
    elapsed_ms: int
    process: ProcessReading = field(default_factory=ProcessReading)
    system: SystemReading = field(default_factory=SystemReading)
    network: NetworkReading = field(default_factory=NetworkReading)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PerformanceSample":
        def _section(key: str, factory: Callable[..., Any]) -> Any:
            section = data.get(key)
            if not isinstance(section, Mapping):
                return factory()
            known = {name: section[name] for name in factory.__dataclass_fields__ if name in section}
            return factory(**known)

        return cls(
            timestamp=int(data.get("timestamp", 0)),
            elapsed_ms=int(data.get("elapsed_ms", 0)),
            process=_section("process", ProcessReading),
            system=_section("system", SystemReading),
            network=_section("network", NetworkReading),
        )


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


class Probe(Protocol):
    async def read(self) -> Any: ...


class ProcessProbe:
    """CPU and resident memory of one process (the current one by default)."""

    def __init__(self, pid: int | None = None) -> None:
        self._pid = pid if pid is not None else os.getpid()
        self._process: psutil.Process | None = None

    async def read(self) -> ProcessReading:
        return await asyncio.to_thread(self._read_sync)

    def _read_sync(self) -> ProcessReading:
        try:
            if self._process is None:
                self._process = psutil.Process(self._pid)
            with self._process.oneshot():
                cpu = self._process.cpu_percent(interval=None)
                memory = self._process.memory_info().rss
        except psutil.Error as exc:
            raise ProbeUnavailable(f"Process {self._pid} metrics unavailable: {exc}") from exc
        return ProcessReading(cpu_percent=float(cpu), memory_bytes=int(memory))


class SystemProbe:
    """Host memory and CPU core count."""

    async def read(self) -> SystemReading:
        return await asyncio.to_thread(self._read_sync)

    def _read_sync(self) -> SystemReading:
        try:
            memory = psutil.virtual_memory()
        except (OSError, RuntimeError) as exc:
            raise ProbeUnavailable(f"System memory unavailable: {exc}") from exc
        return SystemReading(
            total_memory=int(memory.total),
            free_memory=int(memory.available),
            memory_percent=float(memory.percent),
            cpu_count=os.cpu_count() or 0,
        )


def parse_proc_net_dev(text: str) -> NetworkCounters:
    """Sum receive/transmit bytes of non-loopback interfaces."""

    bytes_in = 0
    bytes_out = 0
    for line in text.splitlines():
        if ":" not in line:
            continue
        name, _, data = line.partition(":")
        if name.strip() == "lo":
            continue
        fields = data.split()
        if len(fields) < 9:
            continue
        try:
            bytes_in += int(fields[0])
            bytes_out += int(fields[8])
        except ValueError:
            continue
    return NetworkCounters(bytes_in=bytes_in, bytes_out=bytes_out)


def parse_netstat_ib(text: str) -> NetworkCounters:
    """Sum ``Ibytes``/``Obytes`` from BSD ``netstat -ib`` link rows.

    Rows without a hardware address have one column fewer, so byte counters
    are read relative to the end of the row.
    """

    bytes_in = 0
    bytes_out = 0
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 10 or not parts[2].startswith("<Link"):
            continue
        if parts[0].startswith("lo"):
            continue
        try:
            bytes_in += int(parts[-5])
            bytes_out += int(parts[-2])
        except ValueError:
            continue
    return NetworkCounters(bytes_in=bytes_in, bytes_out=bytes_out)


class NetworkProbe:
    """Cumulative interface byte counters with a per-second rate delta."""

    def __init__(
        self,
        *,
        platform: str | None = None,
        proc_path: Path | str = "/proc/net/dev",
        command_timeout: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._platform = platform or sys.platform
        self._proc_path = Path(proc_path)
        self._command_timeout = command_timeout
        self._clock = clock
        self._previous: tuple[float, NetworkCounters] | None = None

    def reset(self) -> None:
        self._previous = None

    async def read(self) -> NetworkReading:
        counters = await self.read_counters()
        now = self._clock()
        previous = self._previous
        self._previous = (now, counters)
        if previous is None:
            return NetworkReading(bytes_in=counters.bytes_in, bytes_out=counters.bytes_out)
        elapsed = now - previous[0]
        in_delta = counters.bytes_in - previous[1].bytes_in
        out_delta = counters.bytes_out - previous[1].bytes_out
        if elapsed <= 0 or in_delta < 0 or out_delta < 0:
            # Counter reset or wrap.
            return NetworkReading(bytes_in=counters.bytes_in, bytes_out=counters.bytes_out)
        in_rate = in_delta / elapsed
        out_rate = out_delta / elapsed
        return NetworkReading(
            bytes_in=counters.bytes_in,
            bytes_out=counters.bytes_out,
            in_rate=in_rate,
            out_rate=out_rate,
            in_rate_mbps=in_rate / _MEGABYTE,
            out_rate_mbps=out_rate / _MEGABYTE,
        )

    async def read_counters(self) -> NetworkCounters:
        if self._platform.startswith("linux"):
            try:
                text = await asyncio.to_thread(self._proc_path.read_text, encoding="utf-8")
            except OSError as exc:
                raise ProbeUnavailable(f"Unable to read {self._proc_path}: {exc}") from exc
            return parse_proc_net_dev(text)
        if self._platform == "darwin":
            return parse_netstat_ib(await self._run_netstat())
        raise ProbeUnavailable(f"Network counters are not supported on {self._platform}")

    async def _run_netstat(self) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                "netstat",
                "-ib",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise ProbeUnavailable(f"netstat unavailable: {exc}") from exc
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self._command_timeout
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ProbeUnavailable("netstat timed out") from exc
        return stdout.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def summarize(samples: list[PerformanceSample], interval: float) -> dict[str, Any]:
    """Aggregate *samples* into the session performance summary."""

    if not samples:
        return {
            "sample_count": 0,
            "duration_ms": 0,
            "interval_seconds": interval,
            "avg_process_cpu": 0.0,
            "max_process_cpu": 0.0,
            "avg_process_memory_bytes": 0,
            "max_process_memory_bytes": 0,
            "avg_system_memory_percent": 0.0,
            "max_system_memory_percent": 0.0,
            "total_system_memory": 0,
            "network_bytes_in": 0,
            "network_bytes_out": 0,
        }
    cpu = [sample.process.cpu_percent for sample in samples]
    memory = [float(sample.process.memory_bytes) for sample in samples]
    system_percent = [sample.system.memory_percent for sample in samples]
    first, last = samples[0], samples[-1]
    return {
        "sample_count": len(samples),
        "duration_ms": last.elapsed_ms - first.elapsed_ms,
        "interval_seconds": interval,
        "avg_process_cpu": _mean(cpu),
        "max_process_cpu": max(cpu),
        "avg_process_memory_bytes": int(_mean(memory)),
        "max_process_memory_bytes": int(max(memory)),
        "avg_system_memory_percent": _mean(system_percent),
        "max_system_memory_percent": max(system_percent),
        "total_system_memory": max(sample.system.total_memory for sample in samples),
        "network_bytes_in": max(0, last.network.bytes_in - first.network.bytes_in),
        "network_bytes_out": max(0, last.network.bytes_out - first.network.bytes_out),
    }


@dataclass(slots=True)
class TelemetryReport:
    samples: list[PerformanceSample]
    summary: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "samples": [sample.to_dict() for sample in self.samples],
            "summary": dict(self.summary),
        }


class TelemetrySampler:
    """Sample the three probes together on a fixed cadence.

    Every sample is appended to ``performance.jsonl`` as soon as it is taken;
    :meth:`stop` reloads the file, summarises it and removes it.
    """

    def __init__(
        self,
        *,
        interval: float = DEFAULT_INTERVAL,
        process_probe: Probe | None = None,
        system_probe: Probe | None = None,
        network_probe: Probe | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = float(interval)
        self._process_probe = process_probe or ProcessProbe()
        self._system_probe = system_probe or SystemProbe()
        self._network_probe = network_probe or NetworkProbe()
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._path: Path | None = None
        self._started_at = 0.0

    @property
    def is_running(self) -> bool:
        return self._task is not None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def samples_path(self) -> Path | None:
        return self._path

    def start(self, output_directory: Path | str | None = None) -> None:
        """Begin sampling in the running loop; the first sample is immediate."""

        if self._task is not None:
            return
        if output_directory is None:
            directory = Path(tempfile.gettempdir())
            name = f"screencam-{int(self._clock() * 1000)}-{SAMPLES_FILENAME}"
        else:
            directory = Path(output_directory)
            name = SAMPLES_FILENAME
        directory.mkdir(parents=True, exist_ok=True)
        self._path = directory / name
        self._path.write_text("", encoding="utf-8")
        reset = getattr(self._network_probe, "reset", None)
        if callable(reset):
            reset()
        loop = asyncio.get_running_loop()
        self._started_at = self._clock()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run())
        logger.info("Telemetry sampling every %.1fs into %s", self._interval, self._path)

    async def stop(self) -> TelemetryReport:
        """Stop sampling and return the durably recorded samples with a summary."""

        task = self._task
        if task is not None:
            assert self._stop_event is not None
            self._stop_event.set()
            try:
                await task
            finally:
                self._task = None
                self._stop_event = None
        path = self._path
        self._path = None
        if path is None:
            return TelemetryReport(samples=[], summary=summarize([], self._interval))
        samples = await asyncio.to_thread(self._load_samples, path)
        summary = summarize(samples, self._interval)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Unable to remove telemetry file %s: %s", path, exc)
        logger.info("Telemetry stopped after %d sample(s)", len(samples))
        return TelemetryReport(samples=samples, summary=summary)

    async def sample_once(self) -> PerformanceSample:
        """Probe everything concurrently; failures yield zeroed readings."""

        process, system, network = await asyncio.gather(
            self._guard("process", self._process_probe, ProcessReading),
            self._guard("system", self._system_probe, SystemReading),
            self._guard("network", self._network_probe, NetworkReading),
        )
        now = self._clock()
        sample = PerformanceSample(
            timestamp=int(now * 1000),
            elapsed_ms=int((now - self._started_at) * 1000),
            process=process,
            system=system,
            network=network,
        )
        if self._path is not None:
            await asyncio.to_thread(self._append, self._path, sample)
        return sample

    # ----------------------------- implementation --------------------------
    async def _run(self) -> None:
        assert self._stop_event is not None
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._stop_event.is_set():
            try:
                await self.sample_once()
            except OSError as exc:
                logger.warning("Unable to persist telemetry sample: %s", exc)
            next_tick += self._interval
            now = loop.time()
            if next_tick < now:
                # Overrun: skip missed ticks instead of sampling back to back.
                missed = int((now - next_tick) // self._interval) + 1
                next_tick += missed * self._interval
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                continue

    async def _guard(self, name: str, probe: Probe, fallback: Callable[[], Any]) -> Any:
        try:
            return await probe.read()
        except ProbeUnavailable as exc:
            logger.debug("%s probe unavailable: %s", name, exc)
        except Exception as exc:
            logger.warning("%s probe failed: %s", name, exc)
        return fallback()

    @staticmethod
    def _append(path: Path, sample: PerformanceSample) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(sample.to_dict(), separators=(",", ":")) + "\n")
            handle.flush()

    @staticmethod
    def _load_samples(path: Path) -> list[PerformanceSample]:
        samples: list[PerformanceSample] = []
        try:
            with path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except FileNotFoundError:
            return samples
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                samples.append(PerformanceSample.from_dict(json.loads(line)))
            except (ValueError, TypeError) as exc:
                logger.warning("Skipping corrupt telemetry sample: %s", exc)
        return samples


__all__ = [
    "DEFAULT_INTERVAL",
    "NetworkCounters",
    "NetworkProbe",
    "NetworkReading",
    "PerformanceSample",
    "ProbeUnavailable",
    "ProcessProbe",
    "ProcessReading",
    "SAMPLES_FILENAME",
    "SystemProbe",
    "SystemReading",
    "TelemetryReport",
    "TelemetrySampler",
    "parse_netstat_ib",
    "parse_proc_net_dev",
    "summarize",
]
