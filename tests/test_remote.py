"""Tests for the extension WebSocket hub."""

from __future__ import annotations

import asyncio
import json
from typing import Callable

import pytest
from fastapi import WebSocketDisconnect

from screen_cam.events import RawEvent
from screen_cam.remote import (
    CONNECTIVITY,
    MESSAGE,
    ExtensionHub,
    TransportError,
    TransportTimeout,
)


class FakeSocket:
    def __init__(self) -> None:
        self.incoming: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self.sent: list[dict[str, object]] = []
        self.accepted = False

    async def accept(self) -> None:
        self.accepted = True

    async def receive(self) -> dict[str, object]:
        item = await self.incoming.get()
        if item is None:
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(item, bytes):
            return {"type": "websocket.receive", "bytes": item}
        return {"type": "websocket.receive", "text": item}

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))


async def _wait_until(predicate: Callable[[], bool]) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def test_request_resolves_with_matching_response() -> None:
    async def _run() -> tuple[object, FakeSocket, ExtensionHub]:
        hub = ExtensionHub()
        hub.open()
        socket = FakeSocket()
        server = asyncio.create_task(hub.serve(socket))
        await _wait_until(lambda: hub.client_count == 1)
        request = asyncio.create_task(
            hub.request("GET_PAGE_DOM", {"tabId": 3}, response_type="DOM_RESULT")
        )
        await _wait_until(lambda: bool(socket.sent))
        request_id = socket.sent[0]["requestId"]
        await socket.incoming.put(
            json.dumps({"type": "DOM_RESULT", "requestId": request_id, "result": {"html": "<p>"}})
        )
        result = await request
        await socket.incoming.put(None)
        await server
        return result, socket, hub

    result, socket, hub = asyncio.run(_run())

    assert result == {"html": "<p>"}
    assert socket.accepted
    assert socket.sent[0]["type"] == "GET_PAGE_DOM"
    assert socket.sent[0]["payload"] == {"tabId": 3}
    assert str(socket.sent[0]["requestId"]).startswith("get_page_dom_")
    assert hub.client_count == 0


def test_request_times_out_without_response() -> None:
    async def _run() -> None:
        hub = ExtensionHub()
        hub.open()
        await hub.request("GET_PAGE_DOM", timeout=0.01, response_type="DOM_RESULT")

    with pytest.raises(TransportTimeout):
        asyncio.run(_run())


def test_request_surfaces_extension_error() -> None:
    async def _run() -> None:
        hub = ExtensionHub()
        hub.open()
        sent: list[dict[str, object]] = []
        original = hub.broadcast

        def _capture(message):
            sent.append(dict(message))
            return original(message)

        hub.broadcast = _capture  # type: ignore[method-assign]
        request = asyncio.create_task(hub.request("GET_PAGE_DOM", response_type="DOM_RESULT"))
        await _wait_until(lambda: bool(sent))
        hub.receive(
            json.dumps(
                {"type": "DOM_RESULT", "requestId": sent[0]["requestId"], "error": "no such tab"}
            )
        )
        await request

    with pytest.raises(TransportError, match="no such tab"):
        asyncio.run(_run())


def test_request_requires_open_hub() -> None:
    async def _run() -> None:
        await ExtensionHub().request("GET_PAGE_DOM", response_type="DOM_RESULT")

    with pytest.raises(TransportError):
        asyncio.run(_run())


def test_close_fails_pending_requests() -> None:
    async def _run() -> None:
        hub = ExtensionHub()
        hub.open()
        request = asyncio.create_task(hub.request("GET_PAGE_DOM", response_type="DOM_RESULT"))
        await asyncio.sleep(0)
        hub.close()
        await request

    with pytest.raises(TransportError, match="closed"):
        asyncio.run(_run())


def test_receive_forwards_events_and_drops_malformed_frames() -> None:
    hub = ExtensionHub()
    received: list[RawEvent] = []
    cleanup = hub.on(MESSAGE, received.append)

    assert hub.receive("not json") is None
    assert hub.receive(json.dumps({"payload": {}})) is None
    event = hub.receive(json.dumps({"type": "CONSOLE", "payload": {"tabId": 1}}))

    assert event is not None
    assert [item.type for item in received] == ["CONSOLE"]

    cleanup()
    assert hub.listener_count(MESSAGE) == 0
    hub.receive(json.dumps({"type": "CONSOLE"}))
    assert len(received) == 1


def test_serve_accepts_binary_frames_and_skips_bad_ones() -> None:
    async def _run() -> tuple[list[RawEvent], ExtensionHub]:
        hub = ExtensionHub()
        hub.open()
        received: list[RawEvent] = []
        hub.on(MESSAGE, received.append)
        socket = FakeSocket()
        server = asyncio.create_task(hub.serve(socket))
        await socket.incoming.put(b"\x80 not utf-8")
        await socket.incoming.put(json.dumps({"type": "CONSOLE", "payload": {"tabId": 1}}).encode())
        await socket.incoming.put(json.dumps({"type": "NETWORK", "payload": {"tabId": 1}}))
        await socket.incoming.put(None)
        await server
        return received, hub

    received, hub = asyncio.run(_run())

    assert [event.type for event in received] == ["CONSOLE", "NETWORK"]
    assert hub.client_count == 0


def test_serve_ends_when_socket_raises_disconnect() -> None:
    class DroppedSocket(FakeSocket):
        async def receive(self) -> dict[str, object]:
            raise WebSocketDisconnect(code=1006)

    async def _run() -> ExtensionHub:
        hub = ExtensionHub()
        hub.open()
        await hub.serve(DroppedSocket())
        return hub

    assert asyncio.run(_run()).client_count == 0


def test_connectivity_listeners_follow_open_and_close() -> None:
    hub = ExtensionHub()
    states: list[bool] = []
    hub.on(CONNECTIVITY, states.append)

    hub.open()
    hub.open()
    hub.close()
    hub.close()

    assert states == [True, False]
    assert not hub.is_connected


def test_failing_listener_does_not_block_others() -> None:
    hub = ExtensionHub()
    seen: list[str] = []

    def _broken(event: RawEvent) -> None:
        raise RuntimeError("listener failure")

    hub.on(MESSAGE, _broken)
    hub.on(MESSAGE, lambda event: seen.append(event.type))
    hub.receive(json.dumps({"type": "CONSOLE"}))

    assert seen == ["CONSOLE"]


def test_unknown_listener_event_is_rejected() -> None:
    with pytest.raises(ValueError):
        ExtensionHub().on("bogus", lambda *_: None)
