from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Union

from .db import log_event


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ContainerEvent:
    """A managed container's lifecycle event, normalised from the runtime's event stream."""

    container_id: str
    action: str  # start|stop|die|health_status|kill|pause|unpause|restart
    timestamp: int  # ms since epoch
    kind: str | None = None
    project_id: str | None = None
    service_id: str | None = None
    detail: str | None = None  # e.g. "healthy" for health_status
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    reconnect_attempts: int
    state: str
    last_error: str | None = None
    timestamp: int = field(default_factory=now_ms)


Published = Union[ContainerEvent, ConnectionStatus]


class EventBus:
    """Fan-out of lifecycle events and connection-status changes, with a bounded history."""

    def __init__(self, history: int = 200) -> None:
        self.lock = Lock()
        self._callbacks: list[Callable[[Published], None]] = []
        self._queues: list[asyncio.Queue] = []
        self._recent: deque[Published] = deque(maxlen=max(1, history))
        self._last_status: ConnectionStatus | None = None

    def subscribe(self, callback: Callable[[Published], None]) -> Callable[[], None]:
        """Register a callback; returns the function that unregisters it."""
        with self.lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self.lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 1000) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        with self.lock:
            self._queues.append(q)
        return q

    def unsubscribe_queue(self, q: asyncio.Queue) -> None:
        with self.lock:
            if q in self._queues:
                self._queues.remove(q)

    def publish(self, item: Published) -> None:
        with self.lock:
            self._recent.append(item)
            if isinstance(item, ConnectionStatus):
                self._last_status = item
            callbacks = list(self._callbacks)
            queues = list(self._queues)

        for cb in callbacks:
            try:
                cb(item)
            except Exception as e:
                log_event("ERROR", f"Event subscriber failed: {type(e).__name__}: {e}")
        for q in queues:
            try:
                q.put_nowait(item)
            except asyncio.QueueFull:
                log_event("DEBUG", "Event subscriber queue full, dropping event")

    def recent(self, limit: int = 100, kind: type | None = None) -> list[Published]:
        with self.lock:
            items = [i for i in self._recent if kind is None or isinstance(i, kind)]
        return items[-limit:] if limit > 0 else []

    @property
    def last_status(self) -> ConnectionStatus | None:
        with self.lock:
            return self._last_status
