from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from devenv import db
from devenv import labels as L
from devenv.api_models import CopyRequest, CreateProjectContainerRequest, ProjectsRequest, SyncRequest
from devenv.docker_ops import ContainerSpec, PortMapping
from devenv.errors import (
    DaemonUnavailable,
    DevenvError,
    JobFailed,
    NoAvailablePort,
    OperationTimeout,
    ResourceConflict,
    ResourceNotFound,
    SyncCancelled,
    SyncInProgress,
)
from devenv.orchestrator import Orchestrator, TransferHandle
from devenv.proxy import ProjectRoute
from devenv.runtime import ConnectionStatus
from devenv.settings import settings
from devenv.transfer import FROM_VOLUME, SyncOptions

orchestrator = Orchestrator()

# owner -> latest transfer / progress snapshot
TRANSFERS: dict[str, TransferHandle] = {}
PROGRESS: dict[str, dict[str, Any]] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.init_db()
    if settings.auto_monitor:
        await orchestrator.start_monitoring()
    yield
    await orchestrator.stop_monitoring()


app = FastAPI(title="devenv orchestrator", lifespan=lifespan)


# --- ERRORS ---
def _status_for(exc: DevenvError) -> int:
    if isinstance(exc, ResourceNotFound):
        return 404
    if isinstance(exc, (ResourceConflict, SyncInProgress, SyncCancelled, NoAvailablePort)):
        return 409
    if isinstance(exc, DaemonUnavailable):
        return 503
    if isinstance(exc, OperationTimeout):
        return 504
    if isinstance(exc, JobFailed):
        return 502
    return 500


@app.exception_handler(DevenvError)
async def devenv_error_handler(request: Request, exc: DevenvError):
    return JSONResponse(
        status_code=_status_for(exc),
        content={"detail": exc.message, "operation": exc.operation, "resource": exc.resource},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# --- TRANSFER BOOKKEEPING ---
def _track(owner: str, kind: str, handle: TransferHandle) -> None:
    TRANSFERS[owner] = handle
    PROGRESS[owner] = {"kind": kind, "status": "running", "percentage": 0, "bytes": 0, "error": None}

    def done(h: TransferHandle, error: BaseException | None) -> None:
        snap = PROGRESS.setdefault(owner, {"kind": kind})
        if error is None:
            snap.update(status="completed", percentage=100)
        elif isinstance(error, SyncCancelled):
            snap.update(status="cancelled", error=str(error))
        else:
            snap.update(status="failed", error=str(error))
            db.log_event("ERROR", f"{kind} failed: {error}", owner=owner, resource_id=h.container_id)

    handle.add_done_callback(done)


def _on_progress(owner: str):
    def update(p) -> None:
        snap = PROGRESS.setdefault(owner, {})
        snap["percentage"] = p.percentage
        if hasattr(p, "bytes_transferred"):
            snap["bytes"] = p.bytes_transferred
        else:
            snap["message"] = p.message

    return update


# --- STATUS ---
@app.get("/health")
async def health():
    status = orchestrator.bus.last_status
    return {
        "ok": True,
        "docker": await orchestrator.resources.ping(),
        "monitor": orchestrator.monitor.state,
        "reconnect_attempts": orchestrator.monitor.reconnect_attempts,
        "proxy_ready": await orchestrator.proxy.is_ready(),
        "last_status": asdict(status) if status else None,
    }


@app.get("/resources")
async def resources():
    return [asdict(r) for r in await orchestrator.list_managed_resources()]


@app.get("/stats")
async def stats():
    return asdict(await orchestrator.resources.system_stats())


@app.get("/containers/{kind}/{owner}")
async def container_state(kind: str, owner: str):
    if kind not in L.CONTAINER_KINDS:
        raise HTTPException(status_code=400, detail=f"Unknown container kind: {kind}")
    return asdict(await orchestrator.get_container_state_by_label(owner, kind))


# --- LIFECYCLE ---
@app.post("/projects/{project_id}/container")
async def create_project_container(project_id: str, req: CreateProjectContainerRequest):
    spec = ContainerSpec(
        image=req.image,
        name=req.name,
        command=req.command,
        environment=req.environment or None,
        ports=[PortMapping(p.host_port, p.container_port) for p in req.ports],
        volume_bindings=list(req.volume_bindings),
        user=req.user,
    )
    container_id = await orchestrator.create_project_container(project_id, req.project_name, spec)
    if req.start:
        await orchestrator.start(container_id)
    return {"id": container_id, "state": asdict(await orchestrator.resources.inspect(container_id))}


@app.post("/containers/{container_id}/start")
async def start_container(container_id: str):
    await orchestrator.start(container_id)
    return {"ok": True}


@app.post("/containers/{container_id}/stop")
async def stop_container(container_id: str):
    await orchestrator.stop(container_id)
    return {"ok": True}


@app.post("/containers/{container_id}/restart")
async def restart_container(container_id: str):
    await orchestrator.restart(container_id)
    return {"ok": True}


@app.delete("/containers/{container_id}")
async def remove_container(container_id: str, remove_volumes: bool = False):
    await orchestrator.remove(container_id, remove_volumes=remove_volumes)
    return {"ok": True}


# --- PROXY ---
@app.get("/projects")
def list_projects():
    return [asdict(p) for p in orchestrator.projects()]


@app.put("/projects")
def put_projects(req: ProjectsRequest):
    orchestrator.set_projects(ProjectRoute(p.id, p.name, p.domain, p.forwarded_port) for p in req.projects)
    return {"count": len(req.projects)}


@app.post("/proxy/reconcile")
async def reconcile_proxy():
    return asdict(await orchestrator.reconcile_proxy())


@app.post("/proxy/bootstrap")
async def bootstrap_proxy():
    result = await orchestrator.proxy.bootstrap()
    return {
        "success": result.success,
        "message": result.message,
        "certificate": result.certificate.decode("utf-8", errors="replace") if result.certificate else None,
    }


# --- TRANSFERS ---
@app.post("/projects/{project_id}/copy")
async def copy_to_volume(project_id: str, req: CopyRequest):
    handle = await orchestrator.copy_to_volume(
        req.host_path, req.volume_name, project_id, on_progress=_on_progress(project_id)
    )
    _track(project_id, "copy", handle)
    return {"owner": project_id, "status": "started"}


@app.post("/projects/{project_id}/sync")
async def sync_project(project_id: str, req: SyncRequest):
    options = SyncOptions(include_node_modules=req.include_node_modules, include_vendor=req.include_vendor)
    if req.direction == FROM_VOLUME:
        handle = await orchestrator.sync_from_volume(
            req.volume_name, req.host_path, project_id, options, on_progress=_on_progress(project_id)
        )
    else:
        handle = await orchestrator.sync_to_volume(
            req.host_path, req.volume_name, project_id, options, on_progress=_on_progress(project_id)
        )
    _track(project_id, f"sync {req.direction}", handle)
    if req.wait:
        await handle.wait()
        return {"owner": project_id, "status": "completed", "container_id": handle.container_id}
    return {"owner": project_id, "status": "started"}


@app.delete("/projects/{project_id}/sync")
async def cancel_sync(project_id: str):
    handle = TRANSFERS.get(project_id)
    if handle is None or handle.done:
        raise HTTPException(status_code=404, detail="No transfer in progress for this project")
    return {"cancelled": await handle.cancel()}


@app.get("/sync/status")
def sync_status():
    return {"queue": asdict(orchestrator.queue.status()), "transfers": PROGRESS}


# --- EVENTS ---
@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000), owner: str | None = None):
    return db.latest_events(limit=limit, owner=owner)


@app.get("/events/recent")
def recent_events(limit: int = Query(100, ge=1, le=1000)):
    out = []
    for item in orchestrator.bus.recent(limit=limit):
        row = asdict(item)
        row["type"] = "connection" if isinstance(item, ConnectionStatus) else "container"
        out.append(row)
    return out


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
