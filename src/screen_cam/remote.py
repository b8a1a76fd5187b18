"""WebSocket channel to the browser extension."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import secrets
import time
from typing import Any, Callable, Mapping, Protocol

from fastapi import WebSocketDisconnect

from .events import ParseError, RawEvent, event_from_message, now_ms

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0

MESSAGE = "message"
CONNECTION = "connection"
CONNECTIVITY = "connectivity"


class TransportError(RuntimeError):
    """Raised when the extension channel cannot serve a request."""


class TransportTimeout(TimeoutError):
    """Raised when a request to the extension receives no response in time."""


class ExtensionSocket(Protocol):
    """Subset of :class:`fastapi.WebSocket` used by the hub."""

    async def accept(self) -> None: ...

    async def receive(self) -> Mapping[str, Any]: ...

    async def send_text(self, data: str) -> None: ...


class _Client:
    _ids = itertools.count(1)

    def __init__(self, socket: ExtensionSocket) -> None:
        self.id = next(self._ids)
        self.socket = socket
        self.outbox: asyncio.Queue[str | None] = asyncio.Queue()

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<ExtensionClient {self.id}>"


class ExtensionHub:
    """Broadcast directives to connected extension clients and collect events.

    The hub is *connected* between :meth:`open` and :meth:`close`; clients
    attach through :meth:`serve`. Listeners registered with :meth:`on` are
    called synchronously from the event loop.
    """

    def __init__(self, *, request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self._request_timeout = float(request_timeout)
        self._connected = False
        self._clients: dict[int, _Client] = {}
        self._listeners: dict[str, list[Callable[..., None]]] = {
            MESSAGE: [],
            CONNECTION: [],
            CONNECTIVITY: [],
        }
        self._pending: dict[str, asyncio.Future[Any]] = {}

    # ------------------------------ properties -----------------------------
    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # ------------------------------ lifecycle ------------------------------
    def open(self) -> None:
        if self._connected:
            return
        self._connected = True
        logger.info("Extension hub accepting clients")
        self._notify(CONNECTIVITY, True)

    def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        for client in list(self._clients.values()):
            client.outbox.put_nowait(None)
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(TransportError("Extension hub closed"))
            self._pending.pop(request_id, None)
        logger.info("Extension hub closed")
        self._notify(CONNECTIVITY, False)

    # ------------------------------ listeners ------------------------------
    def on(self, event: str, listener: Callable[..., None]) -> Callable[[], None]:
        """Register *listener* for *event* and return a cleanup callable."""

        if event not in self._listeners:
            raise ValueError(f"Unknown hub event: {event}")
        self._listeners[event].append(listener)

        def _cleanup() -> None:
            listeners = self._listeners[event]
            for index, candidate in enumerate(listeners):
                if candidate is listener:
                    del listeners[index]
                    break

        return _cleanup

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    # ------------------------------ outbound -------------------------------
    def broadcast(self, message: Mapping[str, Any]) -> int:
        """Queue *message* for every connected client. Returns the client count."""

        data = json.dumps(dict(message), separators=(",", ":"))
        for client in self._clients.values():
            client.outbox.put_nowait(data)
        logger.debug(
            "Broadcast %s to %d extension client(s)", message.get("type"), len(self._clients)
        )
        return len(self._clients)

    def send(self, client: _Client, message: Mapping[str, Any]) -> None:
        if client.id not in self._clients:
            return
        client.outbox.put_nowait(json.dumps(dict(message), separators=(",", ":")))

    async def request(
        self,
        message_type: str,
        payload: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        response_type: str,
    ) -> Any:
        """Broadcast a request and wait for the correlated response.

        Raises :class:`TransportTimeout` when no response arrives in time and
        :class:`TransportError` when the hub is closed or the extension
        reports an error.
        """

        if not self._connected:
            raise TransportError("Extension hub is not accepting clients")
        request_id = f"{message_type.lower()}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pending[request_id] = future
        wait = self._request_timeout if timeout is None else float(timeout)
        logger.info("Sending %s request %s", message_type, request_id)
        try:
            self.broadcast(
                {"type": message_type, "requestId": request_id, "payload": dict(payload or {})}
            )
            try:
                response = await asyncio.wait_for(future, timeout=wait)
            except asyncio.TimeoutError as exc:
                logger.error("Extension request %s timed out after %.1fs", request_id, wait)
                raise TransportTimeout(
                    f"{message_type} request {request_id} timed out after {wait:.1f}s"
                ) from exc
        finally:
            self._pending.pop(request_id, None)
        if not isinstance(response, Mapping) or response.get("type") != response_type:
            raise TransportError(f"Unexpected response to {request_id}")
        error = response.get("error")
        if error:
            raise TransportError(str(error))
        return response.get("result")

    # ------------------------------ inbound --------------------------------
    async def serve(self, socket: ExtensionSocket) -> None:
        """Run the exchange with one extension client until it disconnects."""

        await socket.accept()
        client = _Client(socket)
        self._clients[client.id] = client
        logger.info("Extension client %d connected", client.id)
        writer = asyncio.create_task(self._write_loop(client))
        try:
            self._notify(CONNECTION, client)
            while self._connected:
                message = await socket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                if data is None:
                    logger.warning("Ignoring empty frame from extension client %d", client.id)
                    continue
                self.receive(data)
        except WebSocketDisconnect:
            pass
        finally:
            self._clients.pop(client.id, None)
            client.outbox.put_nowait(None)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            logger.info("Extension client %d disconnected", client.id)

    def receive(self, text: str | bytes) -> RawEvent | None:
        """Handle one inbound frame; returns the event forwarded to listeners."""

        try:
            message = json.loads(text)
            request_id = message.get("requestId") if isinstance(message, dict) else None
            if isinstance(request_id, str) and request_id in self._pending:
                future = self._pending[request_id]
                if not future.done():
                    future.set_result(message)
                return None
            event = event_from_message(message, received_at=now_ms())
        except (ValueError, ParseError) as exc:
            logger.warning("Dropping malformed extension message: %s", exc)
            return None
        self._notify(MESSAGE, event)
        return event

    # ----------------------------- implementation --------------------------
    def _notify(self, event: str, argument: object) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(argument)
            except Exception:
                logger.exception("Extension hub %s listener failed", event)

    async def _write_loop(self, client: _Client) -> None:
        while True:
            data = await client.outbox.get()
            if data is None:
                return
            try:
                await client.socket.send_text(data)
            except Exception as exc:
                logger.debug("Failed to send to extension client %d: %s", client.id, exc)
                return


__all__ = [
    "CONNECTION",
    "CONNECTIVITY",
    "DEFAULT_REQUEST_TIMEOUT",
    "ExtensionHub",
    "ExtensionSocket",
    "MESSAGE",
    "TransportError",
    "TransportTimeout",
]
