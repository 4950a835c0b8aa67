import asyncio

import pytest

from devenv import labels as L
from devenv.docker_ops import ContainerSpec
from devenv.errors import SyncCancelled, SyncInProgress
from devenv.orchestrator import Orchestrator
from devenv.proxy import ProjectRoute, hash_project_containers

from fakes import FakeScheduler, eventually


def _route(pid):
    return ProjectRoute(id=pid, name=pid, domain=f"{pid}.test", forwarded_port=8443)


def _start_event(container):
    return {"Type": "container", "Action": "start", "Actor": {"ID": container.id, "Attributes": container.labels}}


@pytest.fixture
def orch(resources):
    return Orchestrator(resources=resources, scheduler=FakeScheduler(), max_concurrent_syncs=1)


@pytest.mark.asyncio
async def test_state_by_owner_and_kind(orch, fake_docker):
    c = fake_docker.containers.add(L.project_container_labels("p1", "one"))
    state = await orch.get_container_state_by_label("p1", L.PROJECT_CONTAINER)
    assert state.exists and state.running and state.id == c.id

    missing = await orch.get_container_state_by_label("p1", L.SERVICE_CONTAINER)
    assert missing.exists is False


@pytest.mark.asyncio
async def test_copy_runs_outside_the_queue(orch, fake_docker):
    fake_docker.auto_finish = False
    running = await orch.sync_to_volume("/home/me/a", "vol-a", "p1")
    await eventually(lambda: running.container_id is not None)

    # the single sync slot is taken, copy still goes through
    copy = await orch.copy_to_volume("/home/me/b", "vol-b", "p2")
    await eventually(lambda: copy.container_id is not None)
    helper = fake_docker.containers.get(copy.container_id)
    helper.status = "exited"
    helper.finished.set()
    await copy.wait()
    assert copy.done

    await running.cancel()
    with pytest.raises(SyncCancelled):
        await running.wait()


@pytest.mark.asyncio
async def test_second_sync_for_same_project_is_rejected(orch, fake_docker):
    fake_docker.auto_finish = False
    first = await orch.sync_to_volume("/home/me/a", "vol-a", "p1")
    await eventually(lambda: first.container_id is not None)

    with pytest.raises(SyncInProgress):
        await orch.sync_from_volume("vol-a", "/home/me/a", "p1")

    await first.cancel()
    with pytest.raises(SyncCancelled):
        await first.wait()


@pytest.mark.asyncio
async def test_cancel_queued_and_running_transfers(orch, fake_docker):
    fake_docker.auto_finish = False
    first = await orch.sync_to_volume("/home/me/a", "vol-a", "p1")
    await eventually(lambda: first.container_id is not None)
    second = await orch.sync_to_volume("/home/me/b", "vol-b", "p2")
    await eventually(lambda: orch.queue.is_queued("p2"))

    errors = []
    second.add_done_callback(lambda handle, error: errors.append((handle.owner, type(error))))

    assert await second.cancel() is True
    with pytest.raises(SyncCancelled):
        await second.wait()
    # never got a helper
    assert second.container_id is None

    assert await first.cancel() is True
    with pytest.raises(SyncCancelled):
        await first.wait()
    assert ("remove", first.container_id) in fake_docker.calls

    await asyncio.sleep(0)
    assert errors == [("p2", SyncCancelled)]
    assert orch.queue.status().active == []


@pytest.mark.asyncio
async def test_cancel_before_helper_starts_is_applied_once_it_does(orch, fake_docker):
    fake_docker.auto_finish = False
    handle = await orch.sync_to_volume("/home/me/a", "vol-a", "p1")
    assert await handle.cancel() is True

    with pytest.raises(SyncCancelled):
        await handle.wait()
    assert handle.container_id is not None
    assert ("remove", handle.container_id) in fake_docker.calls


@pytest.mark.asyncio
async def test_project_starts_drive_one_proxy_reconcile(orch, fake_docker):
    sched = orch.monitor.scheduler
    fake_docker.containers.add(L.service_container_labels("caddy", "proxy"))
    c1 = fake_docker.containers.add(L.project_container_labels("p1", "one"))
    c2 = fake_docker.containers.add(L.project_container_labels("p2", "two"))
    orch.set_projects([_route("p1"), _route("p2")])
    seen = []
    orch.subscribe(seen.append)

    assert await orch.start_monitoring() is True
    stream = fake_docker.event_streams[0]
    try:
        stream.push(_start_event(c1))
        await eventually(lambda: orch.monitor.debouncer.pending)
        sched.advance(0.1)
        stream.push(_start_event(c2))
        await eventually(lambda: len([e for e in seen if getattr(e, "action", None) == "start"]) == 2)
        sched.advance(0.6)

        expected = hash_project_containers({"p1": c1.id[:12], "p2": c2.id[:12]})
        await eventually(lambda: orch.proxy.last_applied_hash == expected)
        reloads = [cmd for _cid, cmd in fake_docker.exec_calls if cmd[:2] == ["caddy", "reload"]]
        assert len(reloads) == 1
    finally:
        await orch.stop_monitoring()


@pytest.mark.asyncio
async def test_lifecycle_passthrough(orch, fake_docker):
    cid = await orch.create_project_container("p1", "one", ContainerSpec(image="nginx:latest"))
    await orch.start(cid)
    await orch.restart(cid)
    await orch.stop(cid)
    await orch.remove(cid)
    assert [op for op, target in fake_docker.calls if target == cid] == ["start", "restart", "stop", "remove"]
    assert [r.resource for r in await orch.list_managed_resources()] == ["network"]
