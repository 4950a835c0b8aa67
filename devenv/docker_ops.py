from __future__ import annotations

import asyncio
import io
import re
import tarfile
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

import docker
import docker.errors
import docker.utils
import requests

from . import labels as L
from .db import log_event
from .errors import (
    DaemonUnavailable,
    DevenvError,
    OperationTimeout,
    ResourceConflict,
    ResourceNotFound,
)
from .ports import PortResolver
from .settings import settings


VOLUME_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,254}$")
WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:\\")

FATAL_STATES = frozenset({"exited", "dead"})
HEALTH_STATES = frozenset({"starting", "healthy", "unhealthy"})


def validate_volume_name(name: str) -> None:
    if not VOLUME_NAME_RE.match(name or ""):
        raise ValueError("Invalid volume name. Use letters/numbers and -._, starting with a letter or number.")


def volume_names_from_bindings(bindings: Iterable[str]) -> list[str]:
    """Named volumes referenced by bind strings.

    ``["my-volume:/data", "/host/path:/app"]`` -> ``["my-volume"]``
    """
    names: list[str] = []
    for binding in bindings:
        if binding.startswith("/") or WINDOWS_DRIVE_RE.match(binding):
            continue
        names.append(binding.split(":", 1)[0])
    return names


@dataclass(frozen=True)
class PortMapping:
    host_port: int
    container_port: int


@dataclass(frozen=True)
class ContainerState:
    """Snapshot of a container, computed fresh from the runtime on every call."""

    exists: bool
    running: bool = False
    id: str | None = None
    name: str | None = None
    state: str | None = None
    ports: tuple[PortMapping, ...] = ()
    health: str = "none"

    @classmethod
    def missing(cls) -> ContainerState:
        return cls(exists=False)


@dataclass(frozen=True)
class ContainerSummary:
    id: str
    name: str | None
    state: str | None
    labels: dict[str, str]

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def running(self) -> bool:
        return self.state == "running"

    @property
    def kind(self) -> str | None:
        return self.labels.get(L.TYPE)


@dataclass(frozen=True)
class ManagedContainers:
    projects: list[ContainerSummary] = field(default_factory=list)
    services: list[ContainerSummary] = field(default_factory=list)
    helpers: list[ContainerSummary] = field(default_factory=list)
    tunnels: list[ContainerSummary] = field(default_factory=list)


@dataclass(frozen=True)
class ManagedResource:
    id: str
    name: str | None
    resource: str  # container|volume|network
    kind: str | None
    owner_id: str | None
    labels: dict[str, str]


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class PullProgress:
    status: str
    progress: str
    id: str


@dataclass(frozen=True)
class SystemStats:
    cpus: int
    cpu_usage_percent: float
    mem_total: int
    mem_used: int


@dataclass
class ContainerSpec:
    """What to create. Labels must already carry the managed/type/owner labels."""

    image: str
    labels: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    command: list[str] | str | None = None
    environment: list[str] | dict[str, str] | None = None
    ports: list[PortMapping] = field(default_factory=list)
    volume_bindings: list[str] = field(default_factory=list)
    volume_labels: dict[str, dict[str, str]] | None = None
    network: str | None = None
    healthcheck: dict[str, Any] | None = None
    restart_policy: str | None = "unless-stopped"
    user: str | None = None


class LogStream:
    """Handle for a live log follow; ``cancel()`` closes the underlying streams."""

    def __init__(self) -> None:
        self._streams: list[Any] = []
        self._tasks: list[asyncio.Task] = []
        self.closed = False

    def _attach(self, stream: Any, task: asyncio.Task) -> None:
        self._streams.append(stream)
        self._tasks.append(task)

    def cancel(self) -> None:
        if self.closed:
            return
        self.closed = True
        for stream in self._streams:
            _close_quietly(stream)
        for task in self._tasks:
            task.cancel()

    async def wait(self) -> None:
        """Wait until every pump has drained (the container stopped or the stream was cancelled)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class EventSubscription:
    """Async view over the runtime's blocking event stream."""

    _END = object()

    def __init__(self, stream: Any):
        self._stream = stream
        self._iter = iter(stream)
        self.closed = False

    async def next(self) -> dict[str, Any] | None:
        """Next event, or None once the stream has ended."""
        try:
            item = await asyncio.to_thread(next, self._iter, self._END)
        except (docker.errors.DockerException, requests.exceptions.RequestException, OSError, ValueError) as e:
            if self.closed:
                return None
            raise DaemonUnavailable(f"Event stream failed: {e}", operation="events") from e
        if item is self._END:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        _close_quietly(self._stream)


def _close_quietly(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as e:
        log_event("DEBUG", f"Closing stream failed: {type(e).__name__}: {e}")


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


def _summary(container: Any) -> ContainerSummary:
    """Build a summary from either a sparse (list API) or a full (inspect API) container."""
    attrs = container.attrs or {}
    labels = attrs.get("Labels")
    if labels is None:
        labels = (attrs.get("Config") or {}).get("Labels")
    names = attrs.get("Names") or []
    name = names[0] if names else attrs.get("Name")
    state = attrs.get("State")
    if isinstance(state, dict):
        state = state.get("Status")
    return ContainerSummary(
        id=container.id,
        name=name.lstrip("/") if name else None,
        state=state,
        labels=dict(labels or {}),
    )


def _state_from_attrs(attrs: dict[str, Any]) -> ContainerState:
    st = attrs.get("State") or {}
    ports: list[PortMapping] = []
    for internal, bindings in ((attrs.get("NetworkSettings") or {}).get("Ports") or {}).items():
        if not bindings or not bindings[0].get("HostPort"):
            continue
        ports.append(PortMapping(host_port=int(bindings[0]["HostPort"]), container_port=int(internal.split("/")[0])))
    health = ((st.get("Health") or {}).get("Status")) or "none"
    if health not in HEALTH_STATES:
        health = "none"
    name = attrs.get("Name")
    return ContainerState(
        exists=True,
        running=bool(st.get("Running")),
        id=attrs.get("Id"),
        name=name.lstrip("/") if name else None,
        state=st.get("Status"),
        ports=tuple(ports),
        health=health,
    )


def _default_volume_labels(container_labels: dict[str, str], volume_name: str) -> dict[str, str]:
    if container_labels.get(L.SERVICE_ID):
        return L.service_volume_labels(container_labels[L.SERVICE_ID], volume_name)
    if container_labels.get(L.PROJECT_ID):
        return L.project_volume_labels(container_labels[L.PROJECT_ID], volume_name)
    return {L.MANAGED: "true", L.VOLUME: volume_name}


class ResourceClient:
    """Thin async facade over the Docker Engine API.

    Every SDK call runs on a worker thread. Status/list/inspect calls are bounded
    by ``settings.status_timeout_s`` so callers never hang on a degraded daemon.
    Previously created resources are located by label only.
    """

    def __init__(self, client: docker.DockerClient | None = None, port_resolver: PortResolver | None = None):
        self._client = client
        self._client_lock = threading.Lock()
        self.ports = port_resolver or PortResolver()

    @property
    def client(self) -> docker.DockerClient:
        with self._client_lock:
            if self._client is None:
                if settings.docker_host:
                    self._client = docker.DockerClient(base_url=settings.docker_host)
                else:
                    self._client = docker.from_env()
            return self._client

    async def _call(
        self,
        operation: str,
        resource: str | None,
        fn: Callable[[], Any],
        deadline: float | None = None,
    ) -> Any:
        try:
            work = asyncio.to_thread(fn)
            if deadline is not None:
                return await asyncio.wait_for(work, deadline)
            return await work
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"timed out after {deadline}s", operation=operation, resource=resource) from e
        except DevenvError as e:
            if e.operation is None:
                e.operation = operation
            raise
        except docker.errors.NotFound as e:
            raise ResourceNotFound(_explain(e), operation=operation, resource=resource) from e
        except docker.errors.APIError as e:
            if e.status_code == 409:
                raise ResourceConflict(_explain(e), operation=operation, resource=resource) from e
            raise DevenvError(_explain(e), operation=operation, resource=resource) from e
        except (docker.errors.BuildError, docker.errors.ContainerError, docker.errors.ImageLoadError) as e:
            raise DevenvError(str(e), operation=operation, resource=resource) from e
        except (docker.errors.DockerException, requests.exceptions.RequestException, ConnectionError) as e:
            raise DaemonUnavailable(
                f"Docker is not available: {e}", operation=operation, resource=resource
            ) from e

    def _managed_container(self, container_id: str) -> Any:
        """Fetch a container, refusing anything that does not carry the managed label."""
        container = self.client.containers.get(container_id)
        if not L.is_managed(_summary(container).labels):
            raise ResourceNotFound("container is not managed by devenv", resource=container_id)
        return container

    # ------------------------------------------------------------------ daemon

    async def ping(self) -> bool:
        try:
            await self._call("ping", None, lambda: self.client.ping(), deadline=settings.status_timeout_s)
            return True
        except DevenvError:
            return False

    async def info(self) -> dict[str, Any]:
        return await self._call("info", None, lambda: self.client.info(), deadline=settings.status_timeout_s)

    async def system_stats(self) -> SystemStats:
        """CPU and memory usage of running managed containers."""
        info = await self.info()
        running = await self._call(
            "list_containers",
            None,
            lambda: self.client.containers.list(
                all=False, filters={"label": [L.label_filter(L.MANAGED, "true")]}, sparse=True
            ),
            deadline=settings.status_timeout_s,
        )

        async def one(container_id: str) -> tuple[float, int]:
            try:
                stats = await self._call(
                    "container_stats",
                    container_id,
                    lambda: self.client.containers.get(container_id).stats(stream=False),
                    deadline=settings.stats_timeout_s,
                )
            except DevenvError as e:
                log_event("DEBUG", f"Stats unavailable: {e}", resource_id=container_id)
                return 0.0, 0
            cpu = stats.get("cpu_stats") or {}
            pre = stats.get("precpu_stats") or {}
            cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (pre.get("cpu_usage") or {}).get(
                "total_usage", 0
            )
            system_delta = cpu.get("system_cpu_usage", 0) - pre.get("system_cpu_usage", 0)
            count = cpu.get("online_cpus") or info.get("NCPU") or 1
            percent = (cpu_delta / system_delta) * count * 100.0 if system_delta > 0 and cpu_delta > 0 else 0.0
            return percent, int((stats.get("memory_stats") or {}).get("usage", 0))

        results = await asyncio.gather(*(one(c.id) for c in running))
        return SystemStats(
            cpus=int(info.get("NCPU") or 0),
            cpu_usage_percent=round(sum(r[0] for r in results), 2),
            mem_total=int(info.get("MemTotal") or 0),
            mem_used=sum(r[1] for r in results),
        )

    async def subscribe_events(self, filters: dict[str, Any]) -> EventSubscription:
        stream = await self._call(
            "subscribe_events",
            None,
            lambda: self.client.events(decode=True, filters=filters),
            deadline=settings.status_timeout_s,
        )
        return EventSubscription(stream)

    # ------------------------------------------------------------------ images

    async def image_exists(self, image: str) -> bool:
        images = await self._call(
            "list_images", image, lambda: self.client.images.list(name=image), deadline=settings.status_timeout_s
        )
        return len(images) > 0

    async def pull_image(self, image: str, on_progress: Callable[[PullProgress], None] | None = None) -> None:
        if await self.image_exists(image):
            log_event("DEBUG", f"Image {image} already exists locally")
            return
        loop = asyncio.get_running_loop()

        def pull() -> None:
            repository, tag = docker.utils.parse_repository_tag(image)
            for event in self.client.api.pull(repository, tag=tag or "latest", stream=True, decode=True):
                if event.get("error"):
                    raise DevenvError(event["error"], operation="pull_image", resource=image)
                if on_progress:
                    progress = PullProgress(
                        status=event.get("status", ""), progress=event.get("progress", ""), id=event.get("id", "")
                    )
                    loop.call_soon_threadsafe(on_progress, progress)

        await self._call("pull_image", image, pull)
        log_event("INFO", f"Pulled image {image}")

    async def build_image(self, tag: str, dockerfile: str) -> None:
        """Build an image from an inline Dockerfile (no build context)."""
        await self._call(
            "build_image",
            tag,
            lambda: self.client.images.build(fileobj=io.BytesIO(dockerfile.encode("utf-8")), tag=tag, rm=True),
        )
        log_event("INFO", f"Built image {tag}")

    # ---------------------------------------------------------------- networks

    async def ensure_network(self, name: str | None = None) -> None:
        name = name or settings.docker_network

        def ensure() -> bool:
            existing = self.client.networks.list(names=[name])
            if any(n.name == name for n in existing):
                return False
            self.client.networks.create(name, driver="bridge", labels=L.network_labels())
            return True

        if await self._call("ensure_network", name, ensure):
            log_event("INFO", f"Created docker network '{name}'.")

    # -------------------------------------------------------------- containers

    def _port_bindings(self, desired: list[PortMapping]) -> dict[str, tuple[str, int]]:
        actual = self.ports.resolve([p.host_port for p in desired])
        return {f"{p.container_port}/tcp": (settings.bind_host_ip, actual[p.host_port]) for p in desired}

    async def create_container(self, spec: ContainerSpec) -> str:
        """Create (not start) a container. Port conflicts are remapped, volumes created on demand."""
        if not L.is_managed(spec.labels) or L.TYPE not in spec.labels:
            raise ValueError("Container labels must include the managed and type labels")

        if spec.network:
            await self.ensure_network(spec.network)

        port_bindings = self._port_bindings(spec.ports) if spec.ports else None

        volume_names = volume_names_from_bindings(spec.volume_bindings)
        if volume_names:
            labels_map = spec.volume_labels or {n: _default_volume_labels(spec.labels, n) for n in volume_names}
            await self.ensure_volumes(volume_names, labels_map)

        kwargs: dict[str, Any] = {"labels": spec.labels}
        if spec.name:
            kwargs["name"] = spec.name
        if spec.command is not None:
            kwargs["command"] = spec.command
        if spec.environment:
            kwargs["environment"] = spec.environment
        if port_bindings:
            kwargs["ports"] = port_bindings
        if spec.volume_bindings:
            kwargs["volumes"] = list(spec.volume_bindings)
        if spec.network:
            kwargs["network"] = spec.network
        if spec.healthcheck:
            kwargs["healthcheck"] = spec.healthcheck
        if spec.restart_policy:
            kwargs["restart_policy"] = {"Name": spec.restart_policy}
        if spec.user:
            kwargs["user"] = spec.user

        container = await self._call(
            "create_container", spec.image, lambda: self.client.containers.create(spec.image, **kwargs)
        )
        log_event(
            "INFO",
            f"Created container {container.id[:12]} from image {spec.image}",
            owner=L.owner_of(spec.labels),
            resource_id=container.id,
        )
        return container.id

    async def create_project_container(self, project_id: str, project_name: str, spec: ContainerSpec) -> str:
        merged = {**spec.labels, **L.project_container_labels(project_id, project_name)}
        return await self.create_container(
            replace(spec, labels=merged, network=spec.network or settings.docker_network)
        )

    async def create_service_container(self, service_id: str, service_type: str, spec: ContainerSpec) -> str:
        merged = {**spec.labels, **L.service_container_labels(service_id, service_type)}
        return await self.create_container(
            replace(spec, labels=merged, network=spec.network or settings.docker_network)
        )

    async def start(self, container_id: str) -> None:
        await self._call("start", container_id, lambda: self._managed_container(container_id).start())
        log_event("INFO", "Container started", resource_id=container_id)

    async def stop(self, container_id: str, timeout: int | None = None) -> None:
        t = settings.stop_timeout_s if timeout is None else timeout
        await self._call("stop", container_id, lambda: self._managed_container(container_id).stop(timeout=t))
        log_event("INFO", "Container stopped", resource_id=container_id)

    async def restart(self, container_id: str, timeout: int | None = None) -> None:
        t = settings.stop_timeout_s if timeout is None else timeout
        await self._call("restart", container_id, lambda: self._managed_container(container_id).restart(timeout=t))
        log_event("INFO", "Container restarted", resource_id=container_id)

    async def remove(self, container_id: str, remove_volumes: bool = False) -> None:
        def remove() -> None:
            container = self._managed_container(container_id)
            container.reload()
            if container.status == "running":
                container.stop(timeout=settings.stop_timeout_s)
            container.remove(v=remove_volumes, force=True)

        await self._call("remove", container_id, remove)
        log_event("INFO", "Container removed", resource_id=container_id)

    async def stop_and_remove(self, container_id: str, stop_timeout: int | None = None) -> bool:
        """Best-effort stop + remove used on cleanup paths. Never raises; returns whether removal happened."""
        t = settings.stop_timeout_s if stop_timeout is None else stop_timeout

        def stop_remove() -> None:
            container = self._managed_container(container_id)
            try:
                container.stop(timeout=t)
            except docker.errors.APIError as e:
                log_event("DEBUG", f"Stop before removal failed: {_explain(e)}", resource_id=container_id)
            container.remove(v=False, force=True)

        try:
            await self._call("stop_and_remove", container_id, stop_remove)
            return True
        except ResourceNotFound:
            return False
        except DevenvError as e:
            log_event("WARN", f"Cleanup failed: {e}", resource_id=container_id)
            return False

    async def remove_quietly(self, container_id: str) -> bool:
        """Force-remove, logging failures instead of raising."""
        try:
            await self._call(
                "remove", container_id, lambda: self._managed_container(container_id).remove(v=False, force=True)
            )
            return True
        except ResourceNotFound:
            return False
        except DevenvError as e:
            log_event("WARN", f"Cleanup failed: {e}", resource_id=container_id)
            return False

    async def remove_by_labels(self, label_pairs: dict[str, str]) -> int:
        filters = [L.label_filter(L.MANAGED, "true")] + [L.label_filter(k, v) for k, v in label_pairs.items()]
        containers = await self._call(
            "list_containers",
            None,
            lambda: self.client.containers.list(all=True, filters={"label": filters}, sparse=True),
            deadline=settings.status_timeout_s,
        )
        removed = 0
        for c in containers:
            summary = _summary(c)
            if not L.is_managed(summary.labels):
                continue
            if all(summary.labels.get(k) == v for k, v in label_pairs.items()) and await self.remove_quietly(c.id):
                removed += 1
        return removed

    async def wait(self, container_id: str, timeout: float | None = None) -> int:
        """Block until the container exits; returns its exit code."""
        result = await self._call(
            "wait", container_id, lambda: self._managed_container(container_id).wait(), deadline=timeout
        )
        return int(result.get("StatusCode", -1))

    async def logs(self, container_id: str, tail: int | str = "all") -> str:
        data = await self._call(
            "logs",
            container_id,
            lambda: self._managed_container(container_id).logs(stdout=True, stderr=True, tail=tail),
        )
        return _decode(data).strip()

    async def inspect(self, container_id: str) -> ContainerState:
        """Current state; ``exists=False`` when absent (or not ours). Transport errors propagate."""
        try:
            attrs = await self._call(
                "inspect",
                container_id,
                lambda: self._managed_container(container_id).attrs,
                deadline=settings.status_timeout_s,
            )
        except ResourceNotFound:
            return ContainerState.missing()
        return _state_from_attrs(attrs)

    async def find_summary_by_label(self, key: str, value: str, kind: str | None = None) -> ContainerSummary | None:
        """First managed container carrying ``key=value`` (and ``kind``), from the list endpoint."""
        filters = [L.label_filter(L.MANAGED, "true"), L.label_filter(key, value)]
        if kind:
            filters.append(L.label_filter(L.TYPE, kind))
        containers = await self._call(
            "find_by_label",
            f"{key}={value}",
            lambda: self.client.containers.list(all=True, filters={"label": filters}, sparse=True),
            deadline=settings.status_timeout_s,
        )
        for c in containers:
            summary = _summary(c)
            if not L.is_managed(summary.labels) or summary.labels.get(key) != value:
                continue
            if kind and summary.kind != kind:
                continue
            return summary
        return None

    async def find_by_label(self, key: str, value: str, kind: str | None = None) -> ContainerState | None:
        summary = await self.find_summary_by_label(key, value, kind)
        if summary is None:
            return None
        state = await self.inspect(summary.id)
        return state if state.exists else None

    async def get_container_state_by_label(self, key: str, value: str, kind: str | None = None) -> ContainerState:
        return await self.find_by_label(key, value, kind) or ContainerState.missing()

    async def is_running(self, container_id: str) -> bool:
        return (await self.inspect(container_id)).running

    async def host_port(self, container_id: str, container_port: int) -> int | None:
        for p in (await self.inspect(container_id)).ports:
            if p.container_port == int(container_port):
                return p.host_port
        return None

    async def wait_until_running(
        self, container_id: str, timeout: float | None = None, interval: float | None = None
    ) -> bool:
        """Poll until the container runs. False on timeout, disappearance or a fatal state."""
        timeout = settings.ready_timeout_s if timeout is None else timeout
        interval = settings.ready_poll_s if interval is None else interval
        t0 = time.monotonic()
        while time.monotonic() - t0 < timeout:
            try:
                st = await self.inspect(container_id)
            except DevenvError as e:
                log_event("DEBUG", f"Readiness poll failed: {e}", resource_id=container_id)
            else:
                if not st.exists:
                    return False
                if st.state in FATAL_STATES:
                    log_event("ERROR", f"Container entered fatal state: {st.state}", resource_id=container_id)
                    return False
                if st.running and st.state == "running":
                    return True
            await asyncio.sleep(interval)
        log_event("ERROR", "Timeout waiting for container to reach running state", resource_id=container_id)
        return False

    async def list_managed(self) -> ManagedContainers:
        containers = await self._call(
            "list_containers",
            None,
            lambda: self.client.containers.list(
                all=True, filters={"label": [L.label_filter(L.MANAGED, "true")]}, sparse=True
            ),
            deadline=settings.status_timeout_s,
        )
        grouped = ManagedContainers()
        buckets = {
            L.PROJECT_CONTAINER: grouped.projects,
            L.SERVICE_CONTAINER: grouped.services,
            L.HELPER_CONTAINER: grouped.helpers,
            L.TUNNEL_CONTAINER: grouped.tunnels,
        }
        for c in containers:
            summary = _summary(c)
            if L.is_managed(summary.labels) and summary.kind in buckets:
                buckets[summary.kind].append(summary)
        return grouped

    async def list_managed_resources(self) -> list[ManagedResource]:
        managed = [L.label_filter(L.MANAGED, "true")]
        containers = await self._call(
            "list_containers",
            None,
            lambda: self.client.containers.list(all=True, filters={"label": managed}, sparse=True),
            deadline=settings.status_timeout_s,
        )
        volumes = await self.list_managed_volumes()
        networks = await self._call(
            "list_networks",
            None,
            lambda: self.client.networks.list(filters={"label": managed}),
            deadline=settings.status_timeout_s,
        )
        out: list[ManagedResource] = []
        for c in containers:
            s = _summary(c)
            if L.is_managed(s.labels):
                out.append(ManagedResource(s.id, s.name, "container", s.kind, L.owner_of(s.labels), s.labels))
        for v in volumes:
            out.append(v)
        for n in networks:
            n_labels = dict((n.attrs or {}).get("Labels") or {})
            if L.is_managed(n_labels):
                out.append(ManagedResource(n.id, n.name, "network", n_labels.get(L.TYPE), None, n_labels))
        return out

    # ------------------------------------------------------------- exec & files

    async def exec(self, container_id: str, argv: list[str], timeout: float | None = None) -> ExecResult:
        def run() -> ExecResult:
            result = self._managed_container(container_id).exec_run(argv, demux=True)
            stdout, stderr = result.output if result.output else (None, None)
            return ExecResult(
                exit_code=int(result.exit_code if result.exit_code is not None else -1),
                stdout=_decode(stdout).strip(),
                stderr=_decode(stderr).strip(),
            )

        return await self._call("exec", container_id, run, deadline=timeout)

    async def read_file(self, container_id: str, path: str) -> bytes:
        """Read one file out of a container via the archive endpoint."""
        limit = settings.max_file_bytes

        def read() -> bytes:
            chunks, _stat = self._managed_container(container_id).get_archive(path)
            buf = io.BytesIO()
            for chunk in chunks:
                buf.write(chunk)
                if buf.tell() > limit:
                    raise DevenvError(f"File size exceeds limit of {limit} bytes", operation="read_file", resource=path)
            buf.seek(0)
            with tarfile.open(fileobj=buf, mode="r") as tar:
                for member in tar:
                    if member.isfile():
                        handle = tar.extractfile(member)
                        if handle is not None:
                            return handle.read()
            raise ResourceNotFound(f"File not found in archive: {path}", operation="read_file", resource=container_id)

        return await self._call("read_file", container_id, read)

    async def stream_logs(
        self,
        container_id: str,
        on_line: Callable[[str, str], None],
        tail: int | str = 100,
    ) -> LogStream:
        """Follow stdout and stderr; ``on_line(line, "stdout"|"stderr")`` per line.

        Lines are split on ``\\n`` and ``\\r`` so carriage-return progress output is seen line by line.
        """
        handle = LogStream()
        for source in ("stdout", "stderr"):
            stream = await self._call(
                "stream_logs",
                container_id,
                lambda source=source: self._managed_container(container_id).logs(
                    stdout=source == "stdout",
                    stderr=source == "stderr",
                    stream=True,
                    follow=True,
                    tail=tail,
                ),
            )
            task = asyncio.ensure_future(self._pump(container_id, stream, source, on_line, handle))
            handle._attach(stream, task)
        return handle

    async def _pump(
        self, container_id: str, stream: Any, source: str, on_line: Callable[[str, str], None], handle: LogStream
    ) -> None:
        it = iter(stream)
        end = object()
        pending = ""
        while not handle.closed:
            try:
                chunk = await asyncio.to_thread(next, it, end)
            except (docker.errors.DockerException, requests.exceptions.RequestException, OSError, ValueError) as e:
                if not handle.closed:
                    log_event("WARN", f"Log stream ended: {type(e).__name__}: {e}", resource_id=container_id)
                break
            if chunk is end:
                break
            pending += _decode(chunk)
            parts = re.split(r"[\r\n]", pending)
            pending = parts.pop()
            for line in parts:
                if line.strip():
                    on_line(line.rstrip(), source)
        if pending.strip() and not handle.closed:
            on_line(pending.rstrip(), source)

    # ----------------------------------------------------------------- volumes

    async def volume_exists(self, name: str) -> bool:
        volumes = await self._call(
            "list_volumes",
            name,
            lambda: self.client.volumes.list(filters={"name": name}),
            deadline=settings.status_timeout_s,
        )
        return any(v.name == name for v in volumes)

    async def create_volume(self, name: str, labels: dict[str, str] | None = None) -> bool:
        """Create a volume; an existing volume with the same name is left alone. Returns True if created."""
        validate_volume_name(name)
        if await self.volume_exists(name):
            log_event("DEBUG", f"Volume {name} already exists")
            return False
        await self._call("create_volume", name, lambda: self.client.volumes.create(name=name, labels=labels or {}))
        log_event("INFO", f"Created volume: {name}", owner=L.owner_of(labels or {}))
        return True

    async def create_project_volume(self, name: str, project_id: str) -> bool:
        return await self.create_volume(name, L.project_volume_labels(project_id, name))

    async def ensure_volumes(self, names: Iterable[str], labels_map: dict[str, dict[str, str]] | None = None) -> None:
        for name in names:
            await self.create_volume(name, (labels_map or {}).get(name))

    async def remove_volume(self, name: str) -> None:
        """Remove a managed volume. Absent -> no-op; in use -> ResourceConflict."""

        def remove() -> bool:
            try:
                volume = self.client.volumes.get(name)
            except docker.errors.NotFound:
                return False
            if not L.is_managed((volume.attrs or {}).get("Labels")):
                raise ResourceNotFound("volume is not managed by devenv", operation="remove_volume", resource=name)
            volume.remove()
            return True

        try:
            removed = await self._call("remove_volume", name, remove)
        except ResourceNotFound as e:
            log_event("WARN", f"Skipping removal: {e}")
            return
        except ResourceConflict as e:
            raise ResourceConflict(
                "Cannot remove volume: volume is in use by a container", operation="remove_volume", resource=name
            ) from e
        if removed:
            log_event("INFO", f"Removed volume: {name}")
        else:
            log_event("INFO", f"Volume {name} does not exist, skipping removal")

    async def remove_volumes_quietly(self, names: Iterable[str]) -> None:
        for name in names:
            try:
                await self.remove_volume(name)
            except DevenvError as e:
                log_event("ERROR", f"Failed to remove volume: {e}")

    async def list_managed_volumes(self) -> list[ManagedResource]:
        volumes = await self._call(
            "list_volumes",
            None,
            lambda: self.client.volumes.list(filters={"label": L.label_filter(L.MANAGED, "true")}),
            deadline=settings.status_timeout_s,
        )
        out: list[ManagedResource] = []
        for v in volumes:
            v_labels = dict((v.attrs or {}).get("Labels") or {})
            if L.is_managed(v_labels):
                out.append(ManagedResource(v.name, v.name, "volume", v_labels.get(L.TYPE), L.owner_of(v_labels), v_labels))
        return out


def _explain(e: docker.errors.APIError) -> str:
    return str(e.explanation or e)
