import importlib.util
import os
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from devenv import labels as L
from devenv.docker_ops import ResourceClient
from devenv.orchestrator import Orchestrator
from devenv.ports import PortResolver

from fakes import FakeDockerClient


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("devenv_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


@pytest.fixture
def fake():
    return FakeDockerClient()


@pytest.fixture
def main(monkeypatch, fake):
    project_root = os.path.dirname(os.path.dirname(__file__))
    mod = _import_main_module(project_root)

    # No background event monitoring in API tests
    monkeypatch.setattr(mod, "settings", replace(mod.settings, auto_monitor=False))
    mod.orchestrator = Orchestrator(
        resources=ResourceClient(client=fake, port_resolver=PortResolver(probe=lambda p: True))
    )
    return mod


@pytest.fixture
def client(main):
    with TestClient(main.app) as c:
        yield c


def test_health_reports_daemon_and_monitor(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["docker"] is True
    assert body["monitor"] == "disconnected"
    assert body["proxy_ready"] is False


def test_create_project_container_and_look_it_up(client, fake):
    payload = {
        "project_name": "Shop",
        "image": "nginx:latest",
        "name": "shop-web",
        "ports": [{"host_port": 8080, "container_port": 80}],
        "volume_bindings": ["shop-data:/var/www/html"],
    }
    r = client.post("/projects/p1/container", json=payload)
    assert r.status_code == 200, r.text
    assert r.json()["state"]["running"] is True

    r = client.get(f"/containers/{L.PROJECT_CONTAINER}/p1")
    assert r.json()["exists"] is True
    assert r.json()["ports"] == [{"host_port": 8080, "container_port": 80}]

    # same name again -> conflict
    r = client.post("/projects/p2/container", json=payload)
    assert r.status_code == 409

    kinds = sorted((x["resource"], x["kind"]) for x in client.get("/resources").json())
    assert ("volume", L.PROJECT_VOLUME) in kinds
    assert ("container", L.PROJECT_CONTAINER) in kinds


def test_unknown_kind_is_bad_request(client):
    assert client.get("/containers/spaceship/p1").status_code == 400


def test_unmanaged_container_is_not_found(client, fake):
    foreign = fake.containers.add({"com.example": "x"})
    r = client.post(f"/containers/{foreign.id}/stop")
    assert r.status_code == 404
    assert r.json()["operation"] == "stop"


def test_daemon_down_is_service_unavailable(client, fake):
    fake.up = False
    r = client.get("/resources")
    assert r.status_code == 503
    assert "not available" in r.json()["detail"]


def test_projects_registry_roundtrip(client):
    projects = [{"id": "p1", "name": "Shop", "domain": "shop.test"}]
    assert client.put("/projects", json={"projects": projects}).json() == {"count": 1}
    assert client.get("/projects").json() == [
        {"id": "p1", "name": "Shop", "domain": "shop.test", "forwarded_port": 8443}
    ]


def test_reconcile_without_proxy_succeeds(client):
    r = client.post("/proxy/reconcile")
    assert r.json() == {"success": True, "applied": False, "error": None}


def test_sync_wait_completes_and_reports_status(client, fake):
    payload = {"direction": "to-volume", "host_path": "/home/me/shop", "volume_name": "shop-data", "wait": True}
    r = client.post("/projects/p1/sync", json=payload)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "completed"

    status = client.get("/sync/status").json()
    assert status["queue"]["active"] == []
    assert status["transfers"]["p1"]["kind"] == "sync to-volume"


def test_sync_from_missing_volume_is_not_found(client):
    payload = {"direction": "from-volume", "host_path": "/home/me/shop", "volume_name": "nope", "wait": True}
    assert client.post("/projects/p1/sync", json=payload).status_code == 404


def test_sync_rejects_unknown_direction(client):
    payload = {"direction": "sideways", "host_path": "/x", "volume_name": "v"}
    assert client.post("/projects/p1/sync", json=payload).status_code == 422


def test_cancel_without_transfer_is_not_found(client):
    assert client.delete("/projects/p1/sync").status_code == 404


def test_events_endpoint_reads_diagnostic_log(client):
    client.post("/projects/p1/container", json={"project_name": "Shop", "image": "nginx:latest"})
    rows = client.get("/events", params={"limit": 50}).json()
    assert any(r["message"].startswith("Created container") for r in rows)
    assert client.get("/events/recent").json() == []
