import asyncio
from dataclasses import replace

import docker.errors
import pytest

from devenv import labels as L
from devenv import transfer
from devenv.errors import JobFailed, OperationTimeout, ResourceNotFound, SyncCancelled
from devenv.transfer import (
    FROM_VOLUME,
    TO_VOLUME,
    HelperJobRunner,
    SyncOptions,
    docker_host_path,
    parse_rsync_progress,
    sync_from_command,
    sync_to_command,
)

from fakes import eventually


def _helpers(fake_docker):
    return [c for c in fake_docker.created if c.labels.get(L.TYPE) == L.HELPER_CONTAINER]


def test_parse_rsync_progress():
    assert parse_rsync_progress("sending incremental file list") is None
    p = parse_rsync_progress("      1,234,567  45%  1.23MB/s    0:00:12\r      2,000,000  60%  1.50MB/s    0:00:10")
    assert (p.percentage, p.bytes_transferred) == (60, 2000000)


def test_docker_host_path():
    assert docker_host_path("C:\\Users\\me\\site") == "/c/Users/me/site"
    assert docker_host_path("/home/me/site") == "/home/me/site"


def test_sync_commands_honour_include_toggles():
    assert "--exclude=node_modules" in sync_to_command(SyncOptions(), "1000:1000")
    cmd = sync_to_command(SyncOptions(include_node_modules=True, include_vendor=True), "1000:1000")
    assert "--exclude" not in cmd
    assert cmd.endswith("&& chown -R 1000:1000 /volume")
    assert "--no-owner" in sync_from_command(SyncOptions())


@pytest.mark.asyncio
async def test_copy_failure_reports_exit_code_and_output_and_cleans_up(resources, fake_docker):
    def failing(c):
        c.exit_code = 1
        c.output = "tar: short write"

    fake_docker.on_create = failing
    runner = HelperJobRunner(resources)

    with pytest.raises(JobFailed) as exc:
        await runner.run_copy("/home/me/site", "site-data", "p1")

    assert "exit code 1" in str(exc.value)
    assert "tar: short write" in str(exc.value)
    assert exc.value.exit_code == 1
    [helper] = _helpers(fake_docker)
    assert ("remove", helper.id) in fake_docker.calls


@pytest.mark.asyncio
async def test_copy_success_reports_stages(resources, fake_docker):
    runner = HelperJobRunner(resources)
    stages = []
    await runner.run_copy("/home/me/site", "site-data", "p1", on_progress=lambda p: stages.append(p.percentage))

    assert stages == [0, 50, 100]
    [helper] = _helpers(fake_docker)
    assert helper.kwargs["volumes"] == ["/home/me/site:/source:ro", "site-data:/volume"]
    assert helper.kwargs["user"] == "0:0"
    assert helper.labels[L.OPERATION] == L.VOLUME_COPY
    assert "tar --exclude='node_modules'" in helper.kwargs["command"][2]
    assert ("remove", helper.id) in fake_docker.calls
    assert fake_docker.volumes.get("site-data").attrs["Labels"][L.PROJECT_ID] == "p1"


@pytest.mark.asyncio
async def test_sync_to_volume_streams_progress_and_builds_image_once(resources, fake_docker):
    def with_output(c):
        c.stdout_chunks = [
            b"sending incremental file list\n",
            b"          1,024  10%    1.00MB/s    0:00:01\r",
            b"      2,048,000 100%    2.00MB/s    0:00:02 (xfr#3, to-chk=0/4)\n",
        ]

    fake_docker.on_create = with_output
    runner = HelperJobRunner(resources)
    progress, ready = [], []

    await runner.run_sync(
        TO_VOLUME, "/home/me/site", "site-data", "p1",
        on_container_ready=ready.append, on_progress=progress.append,
    )
    await runner.run_sync(TO_VOLUME, "/home/me/site", "site-data", "p1")

    assert [(p.percentage, p.bytes_transferred) for p in progress] == [(10, 1024), (100, 2048000)]
    first = _helpers(fake_docker)[0]
    assert ready == [first.id]
    assert first.image == "devenv-rsync-alpine:latest"
    assert first.labels[L.OPERATION] == L.VOLUME_SYNC_TO
    assert fake_docker.ops("build") == ["devenv-rsync-alpine:latest"]


@pytest.mark.asyncio
async def test_sync_falls_back_to_runtime_install_when_build_fails(resources, fake_docker):
    fake_docker.images.build_error = docker.errors.BuildError("network down", [])
    runner = HelperJobRunner(resources)
    await runner.run_sync(TO_VOLUME, "/home/me/site", "site-data", "p1")

    [helper] = _helpers(fake_docker)
    assert helper.image == "alpine:latest"
    assert helper.kwargs["command"][2].startswith("apk add --no-cache rsync")


@pytest.mark.asyncio
async def test_rsync_image_removed_outside_is_rebuilt(resources, fake_docker):
    runner = HelperJobRunner(resources)
    await runner.run_sync(TO_VOLUME, "/home/me/site", "site-data", "p1")
    fake_docker.images.present.discard("devenv-rsync-alpine:latest")

    await runner.run_sync(TO_VOLUME, "/home/me/site", "site-data", "p1")

    assert fake_docker.ops("build") == ["devenv-rsync-alpine:latest", "devenv-rsync-alpine:latest"]
    assert [h.image for h in _helpers(fake_docker)] == ["devenv-rsync-alpine:latest"] * 2


@pytest.mark.asyncio
async def test_failed_build_is_retried_on_next_sync(resources, fake_docker):
    fake_docker.images.build_error = docker.errors.BuildError("network down", [])
    runner = HelperJobRunner(resources)
    await runner.run_sync(TO_VOLUME, "/home/me/site", "site-data", "p1")

    fake_docker.images.build_error = None
    await runner.run_sync(TO_VOLUME, "/home/me/site", "site-data", "p1")

    first, second = _helpers(fake_docker)
    assert first.image == "alpine:latest"
    assert second.image == "devenv-rsync-alpine:latest"
    assert not second.kwargs["command"][2].startswith("apk add")


@pytest.mark.asyncio
async def test_cancel_of_unknown_helper_leaves_no_trace(resources):
    runner = HelperJobRunner(resources)
    assert await runner.cancel("does-not-exist") is False
    assert runner._cancelled == set()


@pytest.mark.asyncio
async def test_sync_from_missing_volume_fails_without_a_helper(resources, fake_docker):
    runner = HelperJobRunner(resources)
    with pytest.raises(ResourceNotFound):
        await runner.run_sync(FROM_VOLUME, "/home/me/site", "nope", "p1")
    assert _helpers(fake_docker) == []


@pytest.mark.asyncio
async def test_sync_from_volume_mounts_volume_read_only(resources, fake_docker):
    await resources.create_project_volume("site-data", "p1")
    runner = HelperJobRunner(resources)
    await runner.run_sync(FROM_VOLUME, "/home/me/site", "site-data", "p1", SyncOptions(include_vendor=True))

    [helper] = _helpers(fake_docker)
    assert helper.kwargs["volumes"] == ["site-data:/volume:ro", "/home/me/site:/target"]
    assert "--exclude=vendor" not in helper.kwargs["command"][2]
    assert helper.labels[L.OPERATION] == L.VOLUME_SYNC_FROM


@pytest.mark.asyncio
async def test_timeout_stops_and_removes_helper(resources, fake_docker, monkeypatch):
    monkeypatch.setattr(transfer, "settings", replace(transfer.settings, copy_timeout_s=0.2))
    fake_docker.auto_finish = False
    runner = HelperJobRunner(resources)

    with pytest.raises(OperationTimeout) as exc:
        await runner.run_copy("/home/me/site", "site-data", "p1")

    assert "timed out" in str(exc.value)
    [helper] = _helpers(fake_docker)
    assert ("stop", helper.id) in fake_docker.calls
    assert ("remove", helper.id) in fake_docker.calls


@pytest.mark.asyncio
async def test_cancel_running_sync(resources, fake_docker):
    fake_docker.auto_finish = False
    runner = HelperJobRunner(resources)
    ready = []

    job = asyncio.ensure_future(
        runner.run_sync(TO_VOLUME, "/home/me/site", "site-data", "p1", on_container_ready=ready.append)
    )
    await eventually(lambda: ready)

    assert await runner.cancel(ready[0]) is True
    with pytest.raises(SyncCancelled):
        await job
    assert ("remove", ready[0]) in fake_docker.calls
    assert (await resources.inspect(ready[0])).exists is False
