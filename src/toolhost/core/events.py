"""Toolhost · Server-Events und Event-Bus.

Geschlossene Menge von Event-Varianten (frozen Dataclasses). Jede Variante
kennt ihren Wire-Typ ("server:started", "handler:error", ...) und liefert
über to_payload() das Format {type, timestamp, serverId, data?, error?}.

Listener-Fehler werden pro Aufruf isoliert und geloggt; ein fehlerhafter
Listener hält die übrigen nicht auf.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, ClassVar

from toolhost.utils.logging import get_logger

log = get_logger(__name__)


# ============================================================================
# Event-Varianten
# ============================================================================


@dataclass(frozen=True, kw_only=True)
class ServerEvent:
    """Basis aller Events."""

    type: ClassVar[str] = "server:event"

    server_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def data(self) -> dict[str, Any] | None:
        return None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "serverId": self.server_id,
        }
        data = self.data()
        if data is not None:
            payload["data"] = data
        error = getattr(self, "error", None)
        if error is not None:
            payload["error"] = error
        return payload


@dataclass(frozen=True, kw_only=True)
class ServerStarting(ServerEvent):
    type: ClassVar[str] = "server:starting"


@dataclass(frozen=True, kw_only=True)
class ServerStarted(ServerEvent):
    type: ClassVar[str] = "server:started"


@dataclass(frozen=True, kw_only=True)
class ServerStopping(ServerEvent):
    type: ClassVar[str] = "server:stopping"


@dataclass(frozen=True, kw_only=True)
class ServerStopped(ServerEvent):
    type: ClassVar[str] = "server:stopped"


@dataclass(frozen=True, kw_only=True)
class ServerError(ServerEvent):
    type: ClassVar[str] = "server:error"

    error: str


@dataclass(frozen=True, kw_only=True)
class StateChanged(ServerEvent):
    type: ClassVar[str] = "server:state_changed"

    previous: str
    current: str

    def data(self) -> dict[str, Any]:
        return {"previous": self.previous, "current": self.current}


@dataclass(frozen=True, kw_only=True)
class HandlerRegistered(ServerEvent):
    type: ClassVar[str] = "handler:registered"

    name: str
    category: str

    def data(self) -> dict[str, Any]:
        return {"name": self.name, "category": self.category}


@dataclass(frozen=True, kw_only=True)
class HandlerInvoked(ServerEvent):
    type: ClassVar[str] = "handler:invoked"

    name: str
    duration_ms: float
    success: bool
    request_id: str = ""

    def data(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "durationMs": self.duration_ms,
            "success": self.success,
            "requestId": self.request_id,
        }


@dataclass(frozen=True, kw_only=True)
class HandlerError(ServerEvent):
    type: ClassVar[str] = "handler:error"

    name: str
    message: str
    request_id: str = ""

    def data(self) -> dict[str, Any]:
        return {"name": self.name, "requestId": self.request_id}

    @property
    def error(self) -> str:
        return self.message


# ============================================================================
# Event-Bus
# ============================================================================

EventListener = Callable[[ServerEvent], Any]


class EventBus:
    """Publish/Subscribe für Server-Events.

    Synchrone Listener werden direkt aufgerufen, Coroutine-Funktionen als
    Task auf dem laufenden Loop eingeplant.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._listeners: list[EventListener] = []
        self._history: deque[ServerEvent] = deque(maxlen=max_history)
        self._pending: set[asyncio.Future[Any]] = set()

    def subscribe(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: ServerEvent) -> None:
        """Verteilt ein Event an alle Listener."""
        self._history.append(event)
        for listener in list(self._listeners):
            try:
                if inspect.iscoroutinefunction(listener):
                    self._schedule(listener(event), event)
                else:
                    listener(event)
            except Exception as exc:
                log.warning("event_listener_error", event_type=event.type, error=str(exc))

    def _schedule(self, coro: Any, event: ServerEvent) -> None:
        try:
            future = asyncio.ensure_future(coro)
        except RuntimeError:
            coro.close()
            log.debug("async_event_listener_skipped_no_loop", event_type=event.type)
            return
        self._pending.add(future)
        future.add_done_callback(lambda f: self._on_done(f, event))

    def _on_done(self, future: asyncio.Future[Any], event: ServerEvent) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            log.warning("async_event_listener_error", event_type=event.type, error=str(exc))

    def recent_events(self, n: int = 50, event_type: str = "") -> list[ServerEvent]:
        """Gibt die letzten Events zurück, optional nach Wire-Typ gefiltert."""
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-n:]

    def clear(self) -> None:
        self._listeners.clear()
        self._history.clear()
