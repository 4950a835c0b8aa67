from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .db import log_event
from .errors import SyncCancelled, SyncInProgress
from .settings import settings


@dataclass
class _QueuedJob:
    owner_key: str
    job: Callable[[], Awaitable[Any]]
    future: asyncio.Future


@dataclass(frozen=True)
class SyncQueueStatus:
    active: list[str]
    queued: list[str]
    max_concurrent: int


class SyncQueue:
    """Admission control for helper jobs.

    At most ``max_concurrent`` jobs run at once and never two for the same owner.
    Over-limit requests wait FIFO. A second request for a busy owner is refused.
    """

    def __init__(self, max_concurrent: int | None = None):
        self.max_concurrent = max(1, int(max_concurrent or settings.max_concurrent_syncs))
        self._active: set[str] = set()
        self._queue: deque[_QueuedJob] = deque()
        self._tasks: set[asyncio.Task] = set()

    def is_active(self, owner_key: str) -> bool:
        return owner_key in self._active

    def is_queued(self, owner_key: str) -> bool:
        return any(q.owner_key == owner_key for q in self._queue)

    def status(self) -> SyncQueueStatus:
        return SyncQueueStatus(
            active=sorted(self._active),
            queued=[q.owner_key for q in self._queue],
            max_concurrent=self.max_concurrent,
        )

    async def execute(self, owner_key: str, job: Callable[[], Awaitable[Any]]) -> Any:
        if self.is_active(owner_key) or self.is_queued(owner_key):
            raise SyncInProgress("A sync is already in progress for this project", operation="sync", resource=owner_key)

        if len(self._active) < self.max_concurrent:
            self._active.add(owner_key)
            return await self._run(owner_key, job)

        item = _QueuedJob(owner_key, job, asyncio.get_running_loop().create_future())
        self._queue.append(item)
        log_event("INFO", f"Sync queued ({len(self._queue)} waiting)", owner=owner_key)
        try:
            return await item.future
        except asyncio.CancelledError:
            if item in self._queue:
                self._queue.remove(item)
            raise

    def cancel(self, owner_key: str) -> bool:
        """Drop a job that has not started yet. Running jobs are not touched here."""
        for item in self._queue:
            if item.owner_key == owner_key:
                self._queue.remove(item)
                if not item.future.done():
                    item.future.set_exception(
                        SyncCancelled("Sync was cancelled before it started", operation="sync", resource=owner_key)
                    )
                log_event("INFO", "Queued sync cancelled", owner=owner_key)
                return True
        return False

    async def _run(self, owner_key: str, job: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await job()
        finally:
            self._active.discard(owner_key)
            self._drain()

    def _drain(self) -> None:
        while self._queue and len(self._active) < self.max_concurrent:
            item = self._queue.popleft()
            if item.future.done():
                continue
            self._active.add(item.owner_key)
            task = asyncio.ensure_future(self._run_queued(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_queued(self, item: _QueuedJob) -> None:
        try:
            result = await self._run(item.owner_key, item.job)
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
            else:
                log_event("WARN", f"Abandoned sync failed: {e}", owner=item.owner_key)
            return
        if not item.future.done():
            item.future.set_result(result)
