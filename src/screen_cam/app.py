"""FastAPI application wiring together the ScreenCam services."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .capture import CaptureError, CaptureSupervisor, PreviewGenerationFailed
from .config import ConfigManager
from .diagnostics import collect_diagnostics
from .file_tail import FileTailManager
from .journal import SessionJournal
from .log_router import LogRouter
from .log_sources import LogsTrackerManager
from .remote import ExtensionHub, TransportError, TransportTimeout
from .session import AlreadyActive, NotActive, SessionSlot
from .telemetry import TelemetrySampler
from .version import APP_VERSION


class RecordingStartPayload(BaseModel):
    fps: int | None = Field(default=None, ge=1, le=60)
    include_audio: bool | None = None
    output_path: str | None = None


class LogFilePayload(BaseModel):
    path: str


class WebPatternPayload(BaseModel):
    pattern: str
    name: str | None = None


class PageContentPayload(BaseModel):
    tab_id: int | str | None = None
    url: str | None = None
    all_frames: bool = False
    timeout: float | None = Field(default=None, gt=0)


def create_app(
    config_path: Path | str | None = None,
    *,
    journal_path: Path | str | None = Path("data/session_journal.jsonl"),
    supervisor_options: Mapping[str, Any] | None = None,
) -> FastAPI:
    app = FastAPI(title="ScreenCam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(config_path)
    journal = SessionJournal(journal_path)
    hub = ExtensionHub()
    router = LogRouter(hub)
    tails = FileTailManager()
    logs_manager = LogsTrackerManager(tails, router)
    telemetry = TelemetrySampler(interval=config_manager.get_telemetry_interval())
    supervisor = CaptureSupervisor(
        slot=SessionSlot(),
        telemetry=telemetry,
        logs=logs_manager,
        journal=journal,
        config=config_manager,
        **dict(supervisor_options or {}),
    )

    app.state.config = config_manager
    app.state.hub = hub
    app.state.router = router
    app.state.supervisor = supervisor
    app.state.journal = journal

    @app.on_event("startup")
    async def startup() -> None:
        hub.open()
        logger.info("ScreenCam %s ready", APP_VERSION)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        try:
            await supervisor.abort()
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to abort active recording during shutdown")
        if telemetry.is_running:
            await telemetry.stop()
        logs_manager.destroy()
        router.destroy()
        tails.destroy()
        hub.close()

    # ------------------------------ recording ------------------------------
    @app.get("/api/recording")
    async def get_recording_status() -> dict[str, object]:
        return supervisor.status()

    @app.post("/api/recording/start")
    async def start_recording(payload: RecordingStartPayload) -> dict[str, object]:
        try:
            session = await supervisor.start(
                fps=payload.fps,
                include_audio=payload.include_audio,
                output_path=payload.output_path,
            )
        except AlreadyActive as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except CaptureError as exc:
            raise HTTPException(status_code=500, detail=exc.to_dict()) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"session": session.to_dict(), **supervisor.status()}

    @app.post("/api/recording/stop")
    async def stop_recording() -> dict[str, object]:
        try:
            result = await supervisor.stop()
        except NotActive as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except PreviewGenerationFailed as exc:
            logger.warning("Recording saved without previews: %s", exc)
            return {**exc.result.to_dict(), "preview_error": str(exc)}
        except CaptureError as exc:
            raise HTTPException(status_code=500, detail=exc.to_dict()) from exc
        return result.to_dict()

    # ------------------------------ log files ------------------------------
    @app.get("/api/logs")
    async def list_log_files() -> dict[str, object]:
        return {"files": config_manager.get_log_files(), "tails": tails.stats()}

    @app.post("/api/logs")
    async def add_log_file(payload: LogFilePayload) -> dict[str, object]:
        try:
            files = config_manager.add_log_file(payload.path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not Path(files[-1]).exists():
            logger.warning("Tracked log file %s does not exist yet", payload.path)
        return {"files": files}

    @app.delete("/api/logs")
    async def remove_log_file(path: str) -> dict[str, object]:
        try:
            files = config_manager.remove_log_file(path)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"files": files}

    # ------------------------------ web tracking ---------------------------
    @app.get("/api/track/web")
    async def list_web_patterns() -> dict[str, object]:
        return {
            "patterns": [entry.to_dict() for entry in config_manager.get_web_patterns()],
        }

    @app.post("/api/track/web")
    async def add_web_pattern(payload: WebPatternPayload) -> dict[str, object]:
        try:
            patterns = config_manager.add_web_pattern(payload.model_dump())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"patterns": [entry.to_dict() for entry in patterns]}

    @app.delete("/api/track/web")
    async def remove_web_pattern(name: str) -> dict[str, object]:
        try:
            patterns = config_manager.remove_web_pattern(name)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"patterns": [entry.to_dict() for entry in patterns]}

    # ------------------------------ extension ------------------------------
    @app.get("/api/extension")
    async def get_extension_status() -> dict[str, object]:
        return {
            "connected": hub.is_connected,
            "clients": hub.client_count,
            "tracking": router.is_active,
            "patterns": router.patterns(),
            "tabs": [tab.to_dict() for tab in router.tabs.values()],
        }

    @app.post("/api/extension/dom")
    async def fetch_page_content(payload: PageContentPayload) -> dict[str, object]:
        try:
            result = await router.get_page_dom(
                tab_id=payload.tab_id,
                url=payload.url,
                all_frames=payload.all_frames,
                timeout=payload.timeout,
            )
        except TransportTimeout as exc:
            raise HTTPException(status_code=504, detail=str(exc)) from exc
        except TransportError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"result": result}

    @app.websocket("/ws/extension")
    async def extension_socket(websocket: WebSocket) -> None:
        await hub.serve(websocket)

    # ------------------------------ journal --------------------------------
    @app.get("/api/journal")
    async def get_journal(limit: int = 100, session_id: str | None = None) -> dict[str, object]:
        entries = journal.tail(limit, session_id=session_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.get("/api/diagnostics")
    async def get_diagnostics() -> dict[str, object]:
        try:
            return await run_in_threadpool(collect_diagnostics)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Diagnostics collection failed")
            detail = str(exc).strip()
            if detail:
                message = f"Unable to collect diagnostics: {detail}"
            else:
                message = "Unable to collect diagnostics"
            raise HTTPException(status_code=500, detail=message) from exc

    return app


__all__ = ["create_app"]
