"""Container lifecycle monitoring.

Subscribes to the runtime's event stream, republishes events for managed
containers, triggers a debounced proxy reconciliation when a project
container starts, and keeps the subscription alive across daemon restarts:

    disconnected -> connecting -> connected -> (error|ended|probe failed)
        -> reconnect-scheduled -> connecting -> ...

Timers go through an injected ``Scheduler`` so tests can drive them by hand.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Coroutine, Protocol

from . import labels as L
from .db import log_event
from .docker_ops import EventSubscription, ResourceClient
from .errors import DevenvError
from .runtime import ConnectionStatus, ContainerEvent, EventBus, now_ms
from .settings import settings


LIFECYCLE_ACTIONS = ("start", "stop", "die", "health_status", "kill", "pause", "unpause", "restart")

EVENT_FILTERS = {
    "type": ["container"],
    "event": list(LIFECYCLE_ACTIONS),
    "label": [L.label_filter(L.MANAGED, "true")],
}

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
RECONNECT_SCHEDULED = "reconnect-scheduled"
STOPPED = "stopped"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class Debouncer:
    """Single-slot timer: every ``trigger()`` pushes the action back by ``delay``."""

    def __init__(
        self,
        scheduler: Scheduler,
        delay: float,
        action: Callable[[], Awaitable[Any]],
        spawn: Callable[[Coroutine[Any, Any, Any]], Any],
    ):
        self.scheduler = scheduler
        self.delay = delay
        self.action = action
        self._spawn = spawn
        self._handle: TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self.scheduler.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._spawn(self._run())

    async def _run(self) -> None:
        try:
            await self.action()
        except Exception as e:
            log_event("ERROR", f"Debounced action failed: {type(e).__name__}: {e}")


def normalize_event(raw: dict[str, Any]) -> ContainerEvent | None:
    """Runtime event payload -> ContainerEvent. None for payloads without a container id or action."""
    actor = raw.get("Actor") or {}
    attrs = dict(actor.get("Attributes") or {})
    container_id = actor.get("ID") or raw.get("id")
    action = raw.get("Action") or raw.get("status")
    if not container_id or not action:
        return None

    detail = None
    if ":" in action:
        action, detail = (part.strip() for part in action.split(":", 1))

    if raw.get("timeNano"):
        ts = int(raw["timeNano"]) // 1_000_000
    elif raw.get("time"):
        ts = int(raw["time"]) * 1000
    else:
        ts = now_ms()

    labels = {k: v for k, v in attrs.items() if k.startswith(L.LABEL_NAMESPACE + ".")}
    return ContainerEvent(
        container_id=container_id,
        action=action,
        timestamp=ts,
        kind=labels.get(L.TYPE),
        project_id=labels.get(L.PROJECT_ID),
        service_id=labels.get(L.SERVICE_ID),
        detail=detail,
        labels=labels,
    )


class EventMonitor:
    def __init__(
        self,
        resources: ResourceClient,
        reconcile: Callable[[], Awaitable[Any]],
        bus: EventBus,
        scheduler: Scheduler | None = None,
        debounce_s: float | None = None,
        reconnect_delay_s: float | None = None,
        liveness_interval_s: float | None = None,
    ):
        self.resources = resources
        self.bus = bus
        self.scheduler = scheduler or LoopScheduler()
        self.reconnect_delay_s = settings.reconnect_delay_s if reconnect_delay_s is None else reconnect_delay_s
        self.liveness_interval_s = (
            settings.liveness_interval_s if liveness_interval_s is None else liveness_interval_s
        )
        self.debouncer = Debouncer(
            self.scheduler,
            settings.reconcile_debounce_s if debounce_s is None else debounce_s,
            reconcile,
            self._spawn,
        )

        self.state = DISCONNECTED
        self.last_error: str | None = None
        self._attempts = 0
        self._generation = 0
        self._subscription: EventSubscription | None = None
        self._reconnect_timer: TimerHandle | None = None
        self._probe_timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _publish_status(self, connected: bool, error: str | None = None) -> None:
        self.bus.publish(
            ConnectionStatus(
                connected=connected,
                reconnect_attempts=self._attempts,
                state=self.state,
                last_error=error,
            )
        )

    async def start(self) -> bool:
        """Begin monitoring. A failed first connect is retried in the background."""
        if self.state in (CONNECTING, CONNECTED, RECONNECT_SCHEDULED):
            return self.state != RECONNECT_SCHEDULED
        self.state = DISCONNECTED
        log_event("INFO", "Starting container event monitoring")
        if await self._connect():
            return True
        self._schedule_reconnect(self.last_error)
        return False

    async def stop(self) -> None:
        self._teardown()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        self.debouncer.cancel()
        self.state = STOPPED
        self._attempts = 0
        self.last_error = None
        self._publish_status(False)
        for task in list(self._tasks):
            task.cancel()
        log_event("INFO", "Container event monitoring stopped")

    async def _connect(self) -> bool:
        self._teardown()
        self.state = CONNECTING
        try:
            sub = await self.resources.subscribe_events(EVENT_FILTERS)
        except DevenvError as e:
            log_event("ERROR", f"Event stream connect failed: {e}")
            if self.state != CONNECTING:
                # stopped while connecting
                return False
            self.state = DISCONNECTED
            self.last_error = str(e)
            return False

        if self.state != CONNECTING:
            # stopped while connecting
            sub.close()
            return False

        self._subscription = sub
        self.state = CONNECTED
        self.last_error = None
        self._spawn(self._read(sub, self._generation))
        self._schedule_probe()
        self._publish_status(True)
        log_event("INFO", "Connected to container event stream")
        return True

    def _teardown(self) -> None:
        """Drop the current stream and probe; readers of older generations exit quietly."""
        self._generation += 1
        if self._probe_timer is not None:
            self._probe_timer.cancel()
            self._probe_timer = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def _read(self, sub: EventSubscription, generation: int) -> None:
        error = "event stream ended"
        while True:
            try:
                raw = await sub.next()
            except DevenvError as e:
                error = str(e)
                break
            if generation != self._generation:
                return
            if raw is None:
                break
            self._handle(raw)

        if generation != self._generation or self.state != CONNECTED:
            return
        log_event("WARN", f"Container event stream lost: {error}")
        self._teardown()
        self.state = DISCONNECTED
        self._schedule_reconnect(error)

    def _handle(self, raw: dict[str, Any]) -> None:
        event = normalize_event(raw)
        if event is None or not L.is_managed(event.labels):
            return
        if event.action == "start" and event.kind == L.PROJECT_CONTAINER and event.project_id:
            log_event("DEBUG", "Project container started, scheduling proxy sync", owner=event.project_id)
            self.debouncer.trigger()
        self.bus.publish(event)

    def _schedule_probe(self) -> None:
        self._probe_timer = self.scheduler.call_later(self.liveness_interval_s, lambda: self._spawn(self._probe()))

    async def _probe(self) -> None:
        self._probe_timer = None
        if self.state != CONNECTED:
            return
        generation = self._generation
        healthy = await self.resources.ping()
        if generation != self._generation or self.state != CONNECTED:
            return
        if healthy:
            if self._attempts:
                log_event("INFO", "Container runtime reachable again, resetting reconnect attempts")
                self._attempts = 0
                self._publish_status(True)
            self._schedule_probe()
            return
        log_event("WARN", "Container runtime ping failed, forcing reconnection")
        self._teardown()
        self.state = DISCONNECTED
        self._schedule_reconnect("liveness probe failed")

    def _schedule_reconnect(self, error: str | None) -> None:
        if self.state in (STOPPED, RECONNECT_SCHEDULED):
            return
        self._attempts += 1
        self.state = RECONNECT_SCHEDULED
        self.last_error = error
        delay = self.reconnect_delay_s
        log_event("INFO", f"Scheduling reconnect attempt {self._attempts} in {delay}s")
        self._reconnect_timer = self.scheduler.call_later(delay, lambda: self._spawn(self._reconnect()))
        self._publish_status(False, error)

    async def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self.state != RECONNECT_SCHEDULED:
            return
        log_event("INFO", f"Attempting to reconnect (attempt {self._attempts})...")
        if not await self._connect():
            self._schedule_reconnect(self.last_error)
