"""Bulk file transfer between the host and managed volumes via short-lived helper containers."""

from __future__ import annotations

import asyncio
import os
import re
import sys
from dataclasses import dataclass
from typing import Callable

from . import labels as L
from .db import log_event
from .docker_ops import ContainerSpec, LogStream, ResourceClient
from .errors import DevenvError, JobFailed, OperationTimeout, ResourceNotFound, SyncCancelled
from .settings import settings


TO_VOLUME = "to-volume"
FROM_VOLUME = "from-volume"
DIRECTIONS = frozenset({TO_VOLUME, FROM_VOLUME})

DEFAULT_UID_GID = "1000:1000"

RSYNC_DOCKERFILE = """FROM alpine:latest
RUN apk add --no-cache rsync
CMD ["/bin/sh"]
"""

# "     1,234,567  45%  1.23MB/s    0:00:12"
RSYNC_PROGRESS_RE = re.compile(r"^\s+([\d,]+)\s+(\d+)%")
DRIVE_PATH_RE = re.compile(r"^([A-Za-z]):[\\/](.*)$")

# how long to keep reading job output after the helper exited
LOG_DRAIN_S = 2.0


@dataclass(frozen=True)
class CopyProgress:
    message: str
    current_step: int
    total_steps: int
    percentage: int


COPY_STAGES = {
    "starting": CopyProgress("Preparing to copy files...", 1, 3, 0),
    "copying": CopyProgress("Copying files to volume...", 2, 3, 50),
    "completed": CopyProgress("Files copied successfully", 3, 3, 100),
}


@dataclass(frozen=True)
class SyncProgress:
    percentage: int
    bytes_transferred: int


@dataclass(frozen=True)
class SyncOptions:
    include_node_modules: bool = False
    include_vendor: bool = False

    def exclusions(self) -> list[str]:
        out = []
        if not self.include_node_modules:
            out.append("--exclude=node_modules")
        if not self.include_vendor:
            out.append("--exclude=vendor")
        return out


def parse_rsync_progress(output: str) -> SyncProgress | None:
    """Latest progress line in a chunk of ``rsync --info=progress2`` output, if any."""
    latest = None
    for line in re.split(r"[\r\n]", output):
        m = RSYNC_PROGRESS_RE.match(line)
        if m:
            latest = SyncProgress(percentage=int(m.group(2)), bytes_transferred=int(m.group(1).replace(",", "")))
    return latest


def docker_host_path(path: str) -> str:
    """Bind-mount form of a host path. ``C:\\Users\\me`` -> ``/c/Users/me``."""
    m = DRIVE_PATH_RE.match(path)
    if not m:
        return path
    return f"/{m.group(1).lower()}/{m.group(2).replace(chr(92), '/')}"


def detect_uid_gid() -> str:
    if sys.platform == "win32" or not hasattr(os, "getuid"):
        return DEFAULT_UID_GID
    return f"{os.getuid()}:{os.getgid()}"


def copy_command(uid_gid: str) -> str:
    return (
        "cd /source && "
        "tar --exclude='node_modules' --exclude='vendor' -cf - . | "
        "tar -xf - -C /volume && "
        f"chown -R {uid_gid} /volume"
    )


def sync_to_command(options: SyncOptions, uid_gid: str) -> str:
    parts = ["rsync -az --info=progress2", *options.exclusions(), "/source/ /volume/"]
    return " ".join(parts) + f" && chown -R {uid_gid} /volume"


def sync_from_command(options: SyncOptions) -> str:
    parts = [
        "rsync -az --info=progress2 --no-perms --no-owner --no-group --chmod=ugo=rwX",
        *options.exclusions(),
        "/volume/ /target/",
    ]
    return " ".join(parts)


class HelperJobRunner:
    """Runs one helper container per job and always removes it afterwards."""

    def __init__(self, resources: ResourceClient):
        self.resources = resources
        self._image_lock = asyncio.Lock()
        self._cancelled: set[str] = set()

    async def ensure_rsync_image(self) -> str:
        """Tag of an image with rsync. The runtime is asked on every call; a missing image is (re)built.

        If the build fails the base helper image is used for this run and rsync is installed at run time.
        """
        async with self._image_lock:
            try:
                if not await self.resources.image_exists(settings.rsync_image):
                    log_event("INFO", f"Building rsync image {settings.rsync_image}")
                    await self.resources.build_image(settings.rsync_image, RSYNC_DOCKERFILE)
                return settings.rsync_image
            except DevenvError as e:
                log_event("WARN", f"Failed to build rsync image, falling back to {settings.helper_image}: {e}")
        await self.resources.pull_image(settings.helper_image)
        return settings.helper_image

    @staticmethod
    def _rsync_shell(command: str, image: str) -> str:
        if image != settings.rsync_image:
            return f"apk add --no-cache rsync >/dev/null && {command}"
        return command

    async def run_copy(
        self,
        host_path: str,
        volume_name: str,
        owner: str,
        on_progress: Callable[[CopyProgress], None] | None = None,
        on_container_ready: Callable[[str], None] | None = None,
    ) -> None:
        """Initial population of a volume from a host directory (tar based)."""
        await self.resources.create_project_volume(volume_name, owner)
        await self.resources.pull_image(settings.helper_image)

        log_event("INFO", f"Copying files from {host_path} to volume {volume_name}...", owner=owner)
        _report(on_progress, COPY_STAGES["starting"])

        spec = ContainerSpec(
            image=settings.helper_image,
            labels=L.helper_container_labels(L.VOLUME_COPY, volume_name, owner),
            command=["sh", "-c", copy_command(detect_uid_gid())],
            volume_bindings=[f"{docker_host_path(host_path)}:/source:ro", f"{volume_name}:/volume"],
            volume_labels={volume_name: L.project_volume_labels(owner, volume_name)},
            restart_policy=None,
            user="0:0",
        )
        await self._run_helper(
            "Copy",
            spec,
            timeout=settings.copy_timeout_s,
            on_started=lambda cid: _copy_started(cid, on_progress, on_container_ready),
        )
        log_event("INFO", f"Successfully copied files to volume {volume_name}", owner=owner)
        _report(on_progress, COPY_STAGES["completed"])

    async def run_sync(
        self,
        direction: str,
        host_path: str,
        volume_name: str,
        owner: str,
        options: SyncOptions | None = None,
        on_container_ready: Callable[[str], None] | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> None:
        """Mirror a host directory into a volume or back out of it (rsync based)."""
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown sync direction: {direction!r}")
        options = options or SyncOptions()

        image = await self.ensure_rsync_image()
        path = docker_host_path(host_path)

        if direction == TO_VOLUME:
            await self.resources.create_project_volume(volume_name, owner)
            operation = L.VOLUME_SYNC_TO
            command = sync_to_command(options, detect_uid_gid())
            bindings = [f"{path}:/source:ro", f"{volume_name}:/volume"]
        else:
            if not await self.resources.volume_exists(volume_name):
                raise ResourceNotFound(f"Volume {volume_name} does not exist", operation="sync", resource=volume_name)
            operation = L.VOLUME_SYNC_FROM
            command = sync_from_command(options)
            bindings = [f"{volume_name}:/volume:ro", f"{path}:/target"]

        log_event("INFO", f"Syncing {direction} volume {volume_name} ({host_path})...", owner=owner)

        def on_line(line: str, source: str) -> None:
            if source != "stdout" or on_progress is None:
                return
            progress = parse_rsync_progress(line)
            if progress:
                on_progress(progress)

        spec = ContainerSpec(
            image=image,
            labels=L.helper_container_labels(operation, volume_name, owner),
            command=["sh", "-c", self._rsync_shell(command, image)],
            volume_bindings=bindings,
            volume_labels={volume_name: L.project_volume_labels(owner, volume_name)},
            restart_policy=None,
            user="0:0",
        )
        await self._run_helper(
            "Sync",
            spec,
            timeout=settings.sync_timeout_s,
            on_started=on_container_ready,
            on_line=on_line if on_progress else None,
        )
        log_event("INFO", f"Successfully synced {direction} volume {volume_name}", owner=owner)

    async def cancel(self, container_id: str) -> bool:
        """Stop and remove a running helper; its waiting job fails with SyncCancelled."""
        self._cancelled.add(container_id)
        log_event("INFO", "Cancelling helper job", resource_id=container_id)
        removed = await self.resources.stop_and_remove(container_id, stop_timeout=0)
        if not removed:
            # already gone; nothing left to mark
            self._cancelled.discard(container_id)
        return removed

    async def _run_helper(
        self,
        label: str,
        spec: ContainerSpec,
        timeout: float,
        on_started: Callable[[str], None] | None = None,
        on_line: Callable[[str, str], None] | None = None,
    ) -> None:
        operation = spec.labels[L.OPERATION]
        owner = spec.labels[L.PROJECT_ID]
        container_id = await self.resources.create_container(spec)
        logs = None
        try:
            await self.resources.start(container_id)
            if on_started:
                on_started(container_id)
            if on_line:
                logs = await self.resources.stream_logs(container_id, on_line, tail="all")

            try:
                exit_code = await self.resources.wait(container_id, timeout=timeout)
            except OperationTimeout:
                log_event("ERROR", f"{label} operation timed out after {timeout:g}s", owner=owner, resource_id=container_id)
                await self.resources.stop_and_remove(container_id, stop_timeout=0)
                raise OperationTimeout(
                    f"{label} operation timed out after {timeout:g}s", operation=operation, resource=container_id
                )

            if logs is not None:
                await _drain(logs, container_id)

            if container_id in self._cancelled:
                raise SyncCancelled(f"{label} operation was cancelled", operation=operation, resource=container_id)

            if exit_code != 0:
                output = await self.resources.logs(container_id)
                message = f"{label} operation failed with exit code {exit_code}"
                if output:
                    message += f": {output}"
                log_event("ERROR", message, owner=owner, resource_id=container_id)
                raise JobFailed(message, exit_code, output=output, operation=operation, resource=container_id)
        except (SyncCancelled, OperationTimeout, JobFailed):
            raise
        except DevenvError as e:
            if container_id in self._cancelled:
                raise SyncCancelled(
                    f"{label} operation was cancelled", operation=operation, resource=container_id
                ) from e
            raise
        finally:
            if logs is not None:
                logs.cancel()
            await self.resources.remove_quietly(container_id)
            self._cancelled.discard(container_id)


def _report(callback: Callable[[CopyProgress], None] | None, stage: CopyProgress) -> None:
    if callback:
        callback(stage)


def _copy_started(
    container_id: str,
    on_progress: Callable[[CopyProgress], None] | None,
    on_container_ready: Callable[[str], None] | None,
) -> None:
    if on_container_ready:
        on_container_ready(container_id)
    _report(on_progress, COPY_STAGES["copying"])


async def _drain(logs: LogStream, container_id: str) -> None:
    try:
        await asyncio.wait_for(logs.wait(), LOG_DRAIN_S)
    except asyncio.TimeoutError:
        log_event("DEBUG", "Helper output still open after exit, closing it", resource_id=container_id)
