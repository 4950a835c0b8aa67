from __future__ import annotations

import asyncio
import hashlib
import shlex
import time
from dataclasses import dataclass
from typing import Iterable

from . import labels as L
from .db import log_event
from .docker_ops import ContainerSummary, ResourceClient
from .errors import DevenvError
from .settings import settings


@dataclass(frozen=True)
class ProjectRoute:
    id: str
    name: str
    domain: str
    forwarded_port: int


@dataclass(frozen=True)
class ReconcileResult:
    success: bool
    applied: bool = False
    error: str | None = None


@dataclass(frozen=True)
class ProxySetupResult:
    success: bool
    message: str
    certificate: bytes | None = None


def hash_project_containers(mapping: dict[str, str]) -> str:
    """Stable digest of ``{project_id: short_container_id}``; key order does not matter."""
    joined = "|".join(f"{pid}:{cid}" for pid, cid in sorted(mapping.items()))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def bootstrap_caddyfile(domain: str | None = None) -> str:
    domain = domain or settings.proxy_bootstrap_domain
    return (
        "# devenv certificate bootstrap\n"
        "# Triggers the local root CA generation\n"
        "\n"
        f"https://{domain} {{\n"
        "    tls internal\n"
        '    respond "devenv certificate initialized"\n'
        "}\n"
    )


def render_caddyfile(routes: Iterable[ProjectRoute], mapping: dict[str, str]) -> str:
    """Full Caddyfile: bootstrap site plus one block per project that has a container."""
    lines = [
        "# devenv reverse proxy configuration",
        "# Auto-generated - do not edit",
        "",
        f"https://{settings.proxy_bootstrap_domain} {{",
        "    tls internal",
        '    respond "devenv - all systems ready"',
        "}",
        "",
    ]
    for route in routes:
        address = mapping.get(route.id)
        if not address:
            continue
        lines += [
            f"{route.domain} {{",
            "    tls internal",
            f"    reverse_proxy https://{address}:{route.forwarded_port} {{",
            "        transport http {",
            "            tls_insecure_skip_verify",
            "        }",
            "    }",
            "}",
            "",
        ]
    return "\n".join(lines)


class ProxyReconciler:
    """Keeps the proxy's routing file in line with the project containers that exist right now.

    The file is regenerated from scratch and pushed only when the
    project -> container mapping changed since the last successful reload.
    """

    def __init__(self, resources: ResourceClient):
        self.resources = resources
        self._last_applied_hash: str | None = None
        self._lock = asyncio.Lock()

    @property
    def last_applied_hash(self) -> str | None:
        return self._last_applied_hash

    def reset(self) -> None:
        """Force the next reconcile to apply."""
        self._last_applied_hash = None

    async def _proxy_container(self) -> ContainerSummary | None:
        return await self.resources.find_summary_by_label(
            L.SERVICE_ID, settings.proxy_service_id, L.SERVICE_CONTAINER
        )

    async def is_ready(self) -> bool:
        try:
            proxy = await self._proxy_container()
        except DevenvError:
            return False
        return proxy is not None and proxy.running

    async def reconcile(self, projects: Iterable[ProjectRoute]) -> ReconcileResult:
        projects = list(projects)
        async with self._lock:
            try:
                return await self._reconcile(projects)
            except DevenvError as e:
                log_event("WARN", f"Failed to sync projects to proxy: {e}")
                return ReconcileResult(success=False, error=str(e))

    async def _reconcile(self, projects: list[ProjectRoute]) -> ReconcileResult:
        proxy = await self._proxy_container()
        if proxy is None:
            log_event("INFO", "Skipping proxy sync: proxy container not found")
            return ReconcileResult(success=True)
        if not proxy.running:
            log_event("INFO", "Skipping proxy sync: proxy container not running")
            return ReconcileResult(success=True)

        mapping: dict[str, str] = {}
        for project in projects:
            found = await self.resources.find_summary_by_label(L.PROJECT_ID, project.id, L.PROJECT_CONTAINER)
            if found is None:
                log_event("WARN", f"Project container not found for {project.name}, skipping", owner=project.id)
                continue
            mapping[project.id] = found.short_id

        current = hash_project_containers(mapping)
        if current == self._last_applied_hash:
            log_event("DEBUG", "Project container state unchanged, skipping proxy sync")
            return ReconcileResult(success=True)

        content = render_caddyfile(projects, mapping)
        await self._apply(proxy.id, content)
        self._last_applied_hash = current
        log_event("INFO", f"Proxy configuration applied for {len(mapping)} project(s)", resource_id=proxy.id)
        return ReconcileResult(success=True, applied=True)

    async def _apply(self, proxy_id: str, content: str) -> None:
        path = settings.proxy_config_path
        await self._exec_checked(
            proxy_id, ["sh", "-c", f"printf '%s' {shlex.quote(content)} > {shlex.quote(path)}"], "write Caddyfile"
        )
        await self._exec_checked(proxy_id, ["caddy", "fmt", "--overwrite", path], "format Caddyfile")
        await self._exec_checked(proxy_id, ["caddy", "reload", "--config", path], "reload proxy")

    async def _exec_checked(self, container_id: str, argv: list[str], what: str) -> None:
        result = await self.resources.exec(container_id, argv)
        if result.exit_code != 0:
            detail = result.stderr or result.stdout
            raise DevenvError(f"Failed to {what}: {detail}", operation="proxy_exec", resource=container_id)

    async def bootstrap(self) -> ProxySetupResult:
        """Write the bootstrap config, reload, and fetch the proxy's local root certificate."""
        async with self._lock:
            try:
                proxy = await self._proxy_container()
                if proxy is None:
                    return ProxySetupResult(False, "Proxy container not found")

                if not await self.resources.wait_until_running(proxy.id):
                    return ProxySetupResult(False, "Proxy container failed to reach running state")

                await self._apply(proxy.id, bootstrap_caddyfile())
                # routes were replaced by the bootstrap site
                self._last_applied_hash = None

                if not await self._wait_for_certificate(proxy.id):
                    return ProxySetupResult(False, "Certificate was not generated within timeout period")

                cert = await self.resources.read_file(proxy.id, settings.proxy_root_cert_path)
            except DevenvError as e:
                log_event("ERROR", f"Proxy certificate setup failed: {e}")
                return ProxySetupResult(False, f"Setup failed: {e}")

        log_event("INFO", "Proxy root certificate generated", resource_id=proxy.id)
        return ProxySetupResult(True, "Certificate generated", certificate=cert)

    async def _wait_for_certificate(self, proxy_id: str) -> bool:
        t0 = time.monotonic()
        while time.monotonic() - t0 < settings.cert_timeout_s:
            result = await self.resources.exec(proxy_id, ["test", "-f", settings.proxy_root_cert_path])
            if result.exit_code == 0:
                return True
            await asyncio.sleep(settings.cert_poll_s)
        return False
