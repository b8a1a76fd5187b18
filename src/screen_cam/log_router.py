"""Route extension events to pattern subscribers while tracking tab state."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol

from . import patterns
from .events import (
    DOM_RESULT,
    GET_PAGE_DOM,
    INITIAL_TABS,
    NAVIGATION_COMPLETED,
    NAVIGATION_EVENT_TYPES,
    NAVIGATION_STARTED,
    RawEvent,
    START_RECORDING,
    STOP_RECORDING,
    TAB_ACTIVATED,
    TAB_REMOVED,
    now_ms,
)
from .remote import CONNECTION, CONNECTIVITY, MESSAGE, DEFAULT_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

EventHandler = Callable[[RawEvent], None]


class RouterTransport(Protocol):
    """Operations the router needs from the extension channel."""

    @property
    def is_connected(self) -> bool: ...

    def on(self, event: str, listener: Callable[..., None]) -> Callable[[], None]: ...

    def broadcast(self, message: Mapping[str, Any]) -> int: ...

    def send(self, client: Any, message: Mapping[str, Any]) -> None: ...

    async def request(
        self,
        message_type: str,
        payload: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        response_type: str,
    ) -> Any: ...


@dataclass(slots=True)
class TabRecord:
    """Browser tab as last reported by the extension."""

    id: Any
    url: str | None = None
    previous_url: str | None = None
    title: str | None = None
    active: bool = False

    def to_dict(self, *, include_previous: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "active": self.active,
        }
        if include_previous:
            data["previousUrl"] = self.previous_url
        return data


def _tab_key(value: object) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


class TabRegistry:
    """Tab state derived from navigation and tab lifecycle events."""

    def __init__(self) -> None:
        self._tabs: dict[str, TabRecord] = {}
        self._removed: set[str] = set()

    def __len__(self) -> int:
        return len(self._tabs)

    def get(self, tab_id: object) -> TabRecord | None:
        key = _tab_key(tab_id)
        if key is None:
            return None
        return self._tabs.get(key)

    def values(self) -> list[TabRecord]:
        return list(self._tabs.values())

    def clear(self) -> None:
        self._tabs.clear()
        self._removed.clear()

    def apply(self, event: RawEvent) -> None:
        """Update the registry from *event*; other event types are ignored."""

        if event.type == INITIAL_TABS:
            self._apply_initial(event.payload)
            return
        payload = event.payload if isinstance(event.payload, Mapping) else {}
        key = _tab_key(payload.get("tabId"))
        if key is None:
            return
        if event.type == TAB_REMOVED:
            self._tabs.pop(key, None)
            self._removed.add(key)
            return
        if key in self._removed:
            return
        if event.type == TAB_ACTIVATED:
            tab = self._ensure(key, payload)
            for other in self._tabs.values():
                other.active = other is tab
            return
        if event.type in {NAVIGATION_STARTED, NAVIGATION_COMPLETED}:
            tab = self._ensure(key, payload)
            url = payload.get("url")
            if isinstance(url, str) and url and url != tab.url:
                tab.previous_url = tab.url
                tab.url = url
            title = payload.get("title")
            if isinstance(title, str):
                tab.title = title

    def _ensure(self, key: str, payload: Mapping[str, Any]) -> TabRecord:
        tab = self._tabs.get(key)
        if tab is None:
            tab = TabRecord(id=payload.get("tabId"))
            title = payload.get("title")
            if isinstance(title, str):
                tab.title = title
            self._tabs[key] = tab
        return tab

    def _apply_initial(self, payload: object) -> None:
        entries: Iterable[object]
        if isinstance(payload, Mapping):
            entries = payload.get("tabs") or ()
        elif isinstance(payload, list):
            entries = payload
        else:
            entries = ()
        tabs: dict[str, TabRecord] = {}
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            raw_id = entry.get("id", entry.get("tabId"))
            key = _tab_key(raw_id)
            if key is None:
                continue
            url = entry.get("url")
            title = entry.get("title")
            tabs[key] = TabRecord(
                id=raw_id,
                url=url if isinstance(url, str) else None,
                title=title if isinstance(title, str) else None,
                active=bool(entry.get("active", False)),
            )
        self._tabs = tabs
        self._removed.difference_update(tabs)


class LogRouter:
    """Dispatch extension events to global and pattern-matched subscribers.

    The router is *active* while it has at least one subscriber and the
    transport is connected. Activation announces the merged pattern set to
    the extension and attaches transport listeners; deactivation broadcasts
    a stop directive and detaches them. Both transitions are idempotent.
    """

    def __init__(
        self,
        transport: RouterTransport,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._transport = transport
        self._request_timeout = float(request_timeout)
        self._patterns_by_handler: dict[EventHandler, str] = {}
        self._global_handlers: dict[EventHandler, None] = {}
        self._tabs = TabRegistry()
        self._cleanups: list[Callable[[], None]] = []
        self._connectivity_cleanup = transport.on(CONNECTIVITY, self._on_connectivity)
        self._destroyed = False

    # ------------------------------ properties -----------------------------
    @property
    def is_active(self) -> bool:
        return bool(self._cleanups) and self._transport.is_connected

    @property
    def subscriber_count(self) -> int:
        return len(self._patterns_by_handler) + len(self._global_handlers)

    @property
    def tabs(self) -> TabRegistry:
        return self._tabs

    def patterns(self) -> list[str]:
        """Return the distinct subscribed patterns in subscription order."""

        return list(dict.fromkeys(self._patterns_by_handler.values()))

    # ------------------------------ subscriptions --------------------------
    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Deliver events whose tab URL matches *pattern* to *handler*.

        Subscribing an already registered handler replaces its pattern.
        """

        if not isinstance(pattern, str) or not pattern.strip():
            raise ValueError("pattern must be a non-empty string")
        pattern = pattern.strip()
        logger.info("Subscribing to pattern %s", pattern)
        self._patterns_by_handler[handler] = pattern
        if self.is_active:
            self._announce()
        self._evaluate()
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        before = self.patterns()
        pattern = self._patterns_by_handler.pop(handler, None)
        if pattern is not None:
            logger.debug("Unsubscribed from pattern %s", pattern)
        self._evaluate()
        if self.is_active and self.patterns() != before:
            self._announce()

    def subscribe_global(self, handler: EventHandler) -> Callable[[], None]:
        """Deliver every navigation and tab lifecycle event to *handler*.

        The handler immediately receives an ``INITIAL_TABS`` snapshot.
        """

        self._global_handlers[handler] = None
        self._try_handler(handler, self._initial_tabs_event())
        self._evaluate()
        return lambda: self.unsubscribe_global(handler)

    def unsubscribe_global(self, handler: EventHandler) -> None:
        self._global_handlers.pop(handler, None)
        self._evaluate()

    # ------------------------------ dispatch -------------------------------
    def dispatch(self, event: RawEvent) -> int:
        """Route *event* and return the number of handlers it reached."""

        logger.debug("Received %s for tab %s", event.type, event.tab_id)
        self._tabs.apply(event)
        if event.type in NAVIGATION_EVENT_TYPES:
            delivered = 0
            for handler in list(self._global_handlers):
                self._try_handler(handler, event)
                delivered += 1
            return delivered

        cache: dict[str, bool] = {}
        delivered = 0
        for handler, pattern in list(self._patterns_by_handler.items()):
            if self._should_send(pattern, event, cache):
                self._try_handler(handler, event)
                delivered += 1
        if not delivered:
            logger.debug(
                "%s for tab %s matched none of %s", event.type, event.tab_id, self.patterns()
            )
        return delivered

    async def get_page_dom(
        self,
        *,
        tab_id: object | None = None,
        url: str | None = None,
        all_frames: bool = False,
        timeout: float | None = None,
    ) -> Any:
        """Fetch page content through the extension."""

        return await self._transport.request(
            GET_PAGE_DOM,
            {"tabId": tab_id, "url": url, "allFrames": bool(all_frames)},
            timeout=self._request_timeout if timeout is None else timeout,
            response_type=DOM_RESULT,
        )

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._stop()
        self._patterns_by_handler.clear()
        self._global_handlers.clear()
        self._tabs.clear()
        self._connectivity_cleanup()
        self._destroyed = True

    # ----------------------------- implementation --------------------------
    def _evaluate(self) -> None:
        should_run = self.subscriber_count > 0 and self._transport.is_connected
        if should_run:
            self._start()
        else:
            self._stop()

    def _on_connectivity(self, connected: bool) -> None:
        del connected
        if not self._transport.is_connected:
            # Listeners stay attached to a closed transport otherwise.
            self._detach()
        self._evaluate()

    def _start(self) -> None:
        if not self._transport.is_connected or self._cleanups:
            return
        logger.info(
            "Starting extension tracking for %s (%d subscriber(s))",
            self.patterns() or [patterns.MATCH_ALL],
            self.subscriber_count,
        )
        self._announce()
        self._cleanups.append(self._transport.on(MESSAGE, self.dispatch))
        self._cleanups.append(self._transport.on(CONNECTION, self._on_client))

    def _stop(self) -> None:
        if not self._cleanups:
            return
        if self._transport.is_connected:
            self._transport.broadcast({"type": STOP_RECORDING})
        self._detach()
        logger.info("Stopped extension tracking")

    def _detach(self) -> None:
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in cleanups:
            cleanup()

    def _start_message(self) -> dict[str, Any]:
        return {"type": START_RECORDING, "payload": self.patterns() or [patterns.MATCH_ALL]}

    def _announce(self) -> None:
        self._transport.broadcast(self._start_message())

    def _on_client(self, client: Any) -> None:
        self._transport.send(client, self._start_message())

    def _should_send(self, pattern: str, event: RawEvent, cache: dict[str, bool]) -> bool:
        cached = cache.get(pattern)
        if cached is not None:
            return cached
        tab = self._tabs.get(event.tab_id)
        if tab is None:
            result = False
        else:
            result = patterns.matches_any(pattern, tab.url, tab.previous_url)
        cache[pattern] = result
        return result

    def _initial_tabs_event(self) -> RawEvent:
        return RawEvent(
            type=INITIAL_TABS,
            payload={"tabs": [tab.to_dict(include_previous=False) for tab in self._tabs.values()]},
            timestamp=now_ms(),
            source_id="router",
        )

    @staticmethod
    def _try_handler(handler: EventHandler, event: RawEvent) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception("Log router handler failed for %s", event.type)


__all__ = ["LogRouter", "RouterTransport", "TabRecord", "TabRegistry"]
