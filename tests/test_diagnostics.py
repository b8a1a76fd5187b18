from __future__ import annotations

import json

import pytest

import screen_cam.diagnostics as diagnostics
from screen_cam.capture import CAPTURE_BINARY_ENV


def _stub_sections(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        diagnostics,
        "diagnose_capture_binary",
        lambda: {"status": "ok", "binary": "/usr/bin/ffmpeg", "details": [], "version": "ffmpeg 6.1"},
    )
    monkeypatch.setattr(
        diagnostics,
        "diagnose_media_stack",
        lambda: {"status": "ok", "details": [], "versions": {}, "preview_encoder": "libx264"},
    )
    monkeypatch.setattr(
        diagnostics,
        "collect_system_metrics",
        lambda: {"cpu": {"usage_percent": 12.5, "count": 4}, "memory": {"used_percent": 42.0}},
    )


def test_collect_diagnostics(monkeypatch: pytest.MonkeyPatch) -> None:
    _stub_sections(monkeypatch)

    payload = diagnostics.collect_diagnostics()

    assert payload["version"] == diagnostics.APP_VERSION
    assert payload["capture_binary"]["version"] == "ffmpeg 6.1"
    assert payload["media"]["preview_encoder"] == "libx264"
    assert payload["capture_config"]["input_format"] in {"avfoundation", "gdigrab", "x11grab"}
    assert payload["system"]["cpu"]["count"] == 4


def test_run_json_output(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    _stub_sections(monkeypatch)

    assert diagnostics.run(["--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["media"]["status"] == "ok"


def test_run_text_output(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    _stub_sections(monkeypatch)
    monkeypatch.setattr(
        diagnostics,
        "diagnose_media_stack",
        lambda: {
            "status": "error",
            "details": ["PyAV module not found."],
            "hints": [diagnostics.MEDIA_PIP_HINT],
        },
    )

    assert diagnostics.main([]) == 0

    output = capsys.readouterr().out
    assert "Capture binary: OK" in output
    assert " - ffmpeg 6.1" in output
    assert "Media stack issues detected:" in output
    assert "PyAV module not found." in output
    assert diagnostics.MEDIA_PIP_HINT in output
    assert "12.5% (1m avg), 4 cores" in output


def test_missing_capture_binary_is_reported(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv(CAPTURE_BINARY_ENV, str(tmp_path / "no-ffmpeg"))

    payload = diagnostics.diagnose_capture_binary()

    assert payload["status"] == "error"
    assert payload["hints"] == [diagnostics.FFMPEG_INSTALL_HINT]


def test_describe_capture_config_for_windows() -> None:
    assert diagnostics.describe_capture_config("win32") == {
        "platform": "win32",
        "input_format": "gdigrab",
        "screen_input": "desktop",
        "audio_format": "dshow",
        "audio_input": "audio=virtual-audio-capturer",
    }


def test_summarise_exception() -> None:
    assert diagnostics.summarise_exception(RuntimeError("boom")) == "RuntimeError: boom"
    assert diagnostics.summarise_exception(RuntimeError()) == "RuntimeError"
