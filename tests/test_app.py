"""Tests for the HTTP and WebSocket surface."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Sequence

import pytest

pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from screen_cam import app as app_module


class _Stdin:
    def __init__(self, process: "_Process") -> None:
        self.process = process

    def write(self, data: bytes) -> None:
        self.process.finish(0)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        return None


class _Process:
    def __init__(self) -> None:
        self.pid = 1234
        self.returncode: int | None = None
        self.stdin = _Stdin(self)
        self.stderr = None
        self._exited = asyncio.Event()

    def finish(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode or 0

    def terminate(self) -> None:
        self.finish(-15)

    def kill(self) -> None:
        self.finish(-9)


async def _spawn(command: Sequence[str]) -> _Process:
    Path(command[-1]).write_bytes(b"capture")
    return _Process()


async def _run(command: Sequence[str], timeout: float) -> tuple[int, str]:
    Path(command[-1]).write_bytes(b"finalized")
    return 0, ""


def _write_asset(source: Path, target: Path) -> Path:
    target.write_bytes(b"asset")
    return target


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def client(tmp_path: Path):
    app = app_module.create_app(
        tmp_path / "config.json",
        journal_path=tmp_path / "journal.jsonl",
        supervisor_options={
            "binary": "ffmpeg",
            "platform": "linux",
            "process_factory": _spawn,
            "runner": _run,
            "snapshot_builder": _write_asset,
            "preview_builder": _write_asset,
            "host_info": lambda: {"os": {"platform": "test"}},
            "sleep": _no_sleep,
        },
    )
    with TestClient(app) as test_client:
        yield test_client


def test_recording_lifecycle(client: TestClient, tmp_path: Path) -> None:
    output = tmp_path / "videos" / "demo.webm"

    assert client.get("/api/recording").json() == {"is_recording": False}

    started = client.post("/api/recording/start", json={"fps": 5, "output_path": str(output)})
    assert started.status_code == 200
    body = started.json()
    assert body["is_recording"] is True
    assert body["session"]["status"] == "recording"
    session_id = body["session"]["id"]

    conflict = client.post("/api/recording/start", json={})
    assert conflict.status_code == 409

    stopped = client.post("/api/recording/stop")
    assert stopped.status_code == 200
    result = stopped.json()
    assert result["session_id"] == session_id
    assert result["output_path"] == str(output)
    assert result["snapshot_path"] == str(output.with_suffix(".jpg"))
    assert result["performance"]["summary"]["interval_seconds"] == 5.0
    assert output.read_bytes() == b"finalized"

    assert client.post("/api/recording/stop").status_code == 409

    journal = client.get("/api/journal", params={"session_id": session_id}).json()
    assert [entry["event"] for entry in journal["entries"]] == ["started", "completed"]


def test_start_rejects_invalid_fps(client: TestClient) -> None:
    response = client.post("/api/recording/start", json={"fps": 0})
    assert response.status_code == 422


def test_log_file_routes(client: TestClient, tmp_path: Path) -> None:
    path = str(tmp_path / "app.log")

    added = client.post("/api/logs", json={"path": path})
    assert added.json() == {"files": [path]}
    assert client.get("/api/logs").json()["files"] == [path]

    removed = client.delete("/api/logs", params={"path": path})
    assert removed.json() == {"files": []}

    assert client.post("/api/logs", json={"path": "  "}).status_code == 400


def test_web_pattern_routes(client: TestClient) -> None:
    added = client.post("/api/track/web", json={"name": "app", "pattern": "https://app.example/*"})
    assert added.json() == {"patterns": [{"name": "app", "pattern": "https://app.example/*"}]}

    assert client.post("/api/track/web", json={"pattern": ""}).status_code == 400

    removed = client.delete("/api/track/web", params={"name": "app"})
    assert removed.json() == {"patterns": []}


def test_extension_receives_tracking_directives(client: TestClient, tmp_path: Path) -> None:
    client.post("/api/track/web", json={"name": "app", "pattern": "https://app.example/*"})
    status = client.get("/api/extension").json()
    assert status["connected"] is True
    assert status["tracking"] is False

    started = client.post(
        "/api/recording/start", json={"output_path": str(tmp_path / "web.webm")}
    )
    assert started.status_code == 200

    with client.websocket_connect("/ws/extension") as websocket:
        assert websocket.receive_json() == {
            "type": "START_RECORDING",
            "payload": ["https://app.example/*"],
        }
        status = client.get("/api/extension").json()
        assert status["clients"] == 1
        assert status["tracking"] is True
        assert status["patterns"] == ["https://app.example/*"]

        assert client.post("/api/recording/stop").status_code == 200
        assert websocket.receive_json() == {"type": "STOP_RECORDING"}


def test_page_content_times_out_without_extension(client: TestClient) -> None:
    response = client.post("/api/extension/dom", json={"tab_id": 1, "timeout": 0.05})
    assert response.status_code == 504


def test_diagnostics_route(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_module, "collect_diagnostics", lambda: {"version": "test"})

    response = client.get("/api/diagnostics")

    assert response.status_code == 200
    assert response.json() == {"version": "test"}
