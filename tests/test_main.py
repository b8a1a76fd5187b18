from __future__ import annotations

from pathlib import Path

import pytest

import screen_cam.__main__ as entrypoint


def test_main_serves_the_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: dict[str, object] = {}

    def fake_run(app, **kwargs):
        calls["app"] = app
        calls.update(kwargs)

    monkeypatch.setattr(entrypoint.uvicorn, "run", fake_run)

    exit_code = entrypoint.main(
        [
            "--port",
            "4000",
            "--config",
            str(tmp_path / "config.json"),
            "--journal",
            str(tmp_path / "journal.jsonl"),
            "--log-level",
            "debug",
        ]
    )

    assert exit_code == 0
    assert calls["host"] == "127.0.0.1"
    assert calls["port"] == 4000
    assert calls["log_level"] == "debug"
    assert calls["app"].state.config.path == tmp_path / "config.json"


def test_parser_rejects_unknown_log_level() -> None:
    with pytest.raises(SystemExit):
        entrypoint.build_parser().parse_args(["--log-level", "verbose"])
