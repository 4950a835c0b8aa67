from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable

from . import labels as L
from .db import log_event
from .docker_ops import ContainerSpec, ContainerState, ManagedResource, ResourceClient
from .errors import SyncInProgress
from .events import EventMonitor, Scheduler
from .proxy import ProjectRoute, ProxyReconciler, ReconcileResult
from .runtime import EventBus, Published
from .sync_queue import SyncQueue
from .transfer import FROM_VOLUME, TO_VOLUME, CopyProgress, HelperJobRunner, SyncOptions, SyncProgress


class TransferHandle:
    """A bulk transfer in flight. ``container_id`` is set once the helper container has started."""

    def __init__(self, owner: str, runner: HelperJobRunner, queue: SyncQueue | None = None):
        self.owner = owner
        self.container_id: str | None = None
        self._runner = runner
        self._queue = queue
        self._task: asyncio.Task | None = None
        self._cancel_requested = False
        self._pending: set[asyncio.Task] = set()

    def _container_ready(self, container_id: str) -> None:
        self.container_id = container_id
        if self._cancel_requested:
            task = asyncio.ensure_future(self._runner.cancel(container_id))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def add_done_callback(self, fn: Callable[[TransferHandle, BaseException | None], None]) -> None:
        """``fn(handle, error)`` once the job settles; ``error`` is None on success."""
        assert self._task is not None

        def _done(task: asyncio.Task) -> None:
            fn(self, asyncio.CancelledError() if task.cancelled() else task.exception())

        self._task.add_done_callback(_done)

    async def wait(self) -> None:
        """Wait for the job; raises the job's failure (JobFailed, OperationTimeout, SyncCancelled, ...)."""
        assert self._task is not None
        await self._task

    async def cancel(self) -> bool:
        if self.done:
            return False
        if self._queue is not None and self._queue.cancel(self.owner):
            return True
        if self.container_id:
            return await self._runner.cancel(self.container_id)
        # not queued and helper not started yet
        self._cancel_requested = True
        return True


class Orchestrator:
    """Everything the workflow layer needs, wired together."""

    def __init__(
        self,
        resources: ResourceClient | None = None,
        scheduler: Scheduler | None = None,
        max_concurrent_syncs: int | None = None,
    ):
        self.resources = resources or ResourceClient()
        self.runner = HelperJobRunner(self.resources)
        self.queue = SyncQueue(max_concurrent_syncs)
        self.proxy = ProxyReconciler(self.resources)
        self.bus = EventBus()
        self.monitor = EventMonitor(self.resources, self._reconcile_registered, self.bus, scheduler=scheduler)
        self._projects: dict[str, ProjectRoute] = {}

    # -- project registry (what the proxy should route) --

    def set_projects(self, projects: Iterable[ProjectRoute]) -> None:
        self._projects = {p.id: p for p in projects}

    def projects(self) -> list[ProjectRoute]:
        return list(self._projects.values())

    async def _reconcile_registered(self) -> ReconcileResult:
        result = await self.reconcile_proxy()
        if not result.success:
            log_event("WARN", f"Proxy sync failed: {result.error}")
        return result

    # -- queries --

    async def get_container_state_by_label(self, owner_key: str, kind: str) -> ContainerState:
        return await self.resources.get_container_state_by_label(L.owner_label_key(kind), owner_key, kind)

    async def list_managed_resources(self) -> list[ManagedResource]:
        return await self.resources.list_managed_resources()

    # -- lifecycle --

    async def create_project_container(self, project_id: str, project_name: str, spec: ContainerSpec) -> str:
        return await self.resources.create_project_container(project_id, project_name, spec)

    async def start(self, container_id: str) -> None:
        await self.resources.start(container_id)

    async def stop(self, container_id: str) -> None:
        await self.resources.stop(container_id)

    async def restart(self, container_id: str) -> None:
        await self.resources.restart(container_id)

    async def remove(self, container_id: str, remove_volumes: bool = False) -> None:
        await self.resources.remove(container_id, remove_volumes=remove_volumes)

    # -- bulk transfer --

    def _launch(
        self,
        handle: TransferHandle,
        run: Callable[[], Awaitable[Any]],
    ) -> TransferHandle:
        if handle._queue is not None:
            handle._task = asyncio.ensure_future(handle._queue.execute(handle.owner, run))
        else:
            handle._task = asyncio.ensure_future(run())
        return handle

    def _check_not_busy(self, owner: str) -> None:
        if self.queue.is_active(owner) or self.queue.is_queued(owner):
            raise SyncInProgress("A sync is already in progress for this project", operation="sync", resource=owner)

    async def copy_to_volume(
        self,
        host_path: str,
        volume_name: str,
        owner: str,
        on_progress: Callable[[CopyProgress], None] | None = None,
    ) -> TransferHandle:
        """Initial population. Runs directly, outside the sync queue."""
        handle = TransferHandle(owner, self.runner)
        return self._launch(
            handle,
            lambda: self.runner.run_copy(
                host_path, volume_name, owner, on_progress=on_progress, on_container_ready=handle._container_ready
            ),
        )

    async def sync_to_volume(
        self,
        host_path: str,
        volume_name: str,
        owner: str,
        options: SyncOptions | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> TransferHandle:
        return self._sync(TO_VOLUME, host_path, volume_name, owner, options, on_progress)

    async def sync_from_volume(
        self,
        volume_name: str,
        host_path: str,
        owner: str,
        options: SyncOptions | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> TransferHandle:
        return self._sync(FROM_VOLUME, host_path, volume_name, owner, options, on_progress)

    def _sync(
        self,
        direction: str,
        host_path: str,
        volume_name: str,
        owner: str,
        options: SyncOptions | None,
        on_progress: Callable[[SyncProgress], None] | None,
    ) -> TransferHandle:
        self._check_not_busy(owner)
        handle = TransferHandle(owner, self.runner, self.queue)
        return self._launch(
            handle,
            lambda: self.runner.run_sync(
                direction,
                host_path,
                volume_name,
                owner,
                options=options,
                on_container_ready=handle._container_ready,
                on_progress=on_progress,
            ),
        )

    # -- proxy --

    async def reconcile_proxy(self, projects: Iterable[ProjectRoute] | None = None) -> ReconcileResult:
        return await self.proxy.reconcile(self.projects() if projects is None else projects)

    # -- events --

    def subscribe(self, callback: Callable[[Published], None]) -> Callable[[], None]:
        return self.bus.subscribe(callback)

    async def start_monitoring(self) -> bool:
        return await self.monitor.start()

    async def stop_monitoring(self) -> None:
        await self.monitor.stop()
