import os
import socket
import asyncio
import zipfile
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from tortoise import timezone

from launchpad import agent, ports, processes, registry, sweeper, toolchain
from launchpad.proxy import create_app
from launchpad.models import Deployment
from launchpad.constants import DeploymentStatus
from launchpad.settings import PORT_RETRY_LIMIT


resolve_tool = toolchain.resolve_tool


def without_serve(tool):
    if tool == "serve":
        return None
    return resolve_tool(tool)


def make_zip(path, entries):
    with zipfile.ZipFile(path, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return str(path)


@pytest.fixture
def no_side_effects():
    with (
        patch("launchpad.toolchain.resolve_tool", without_serve),
        patch("launchpad.screenshot.schedule") as schedule,
    ):
        yield schedule


class TestDeployStaticSite:
    """A pre-built archive becomes a running, proxied deployment."""

    @pytest.mark.asyncio
    async def test_running_and_proxied(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "site.zip", {"dist/index.html": "<h1>My Site</h1>"})
        deployment = await agent.deploy(archive, "My Site")
        try:
            assert deployment.status == DeploymentStatus.running.value
            assert deployment.subdomain == "my-site"
            assert deployment.port is not None
            assert deployment.pid is not None
            assert "Starting preview server" in deployment.build_log
            no_side_effects.assert_called_once_with(deployment.id, deployment.port)

            app = create_app(domain="preview.localhost")
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(
                transport=transport,
                base_url="http://my-site.preview.localhost",
            ) as client:
                response = await client.get("/")
            await app.state.client.aclose()
            assert response.status_code == 200
            assert "My Site" in response.text
        finally:
            await agent.remove(deployment.id)

        assert not await Deployment.exists(id=deployment.id)
        assert not os.path.exists(agent.workdir(deployment.id))
        assert not os.path.exists(archive)
        assert not processes.is_alive(deployment.pid)
        assert ports.is_port_free(deployment.port)


class TestDeployFailures:
    @pytest.mark.asyncio
    async def test_project_not_found(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "notes.zip", {"notes.txt": "nothing to build"})
        deployment = await agent.deploy(archive, "Broken")
        assert deployment.status == DeploymentStatus.failed.value
        assert "ProjectNotFound" in deployment.error_log
        assert deployment.port is None
        assert not os.path.exists(agent.workdir(deployment.id))
        no_side_effects.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_archive(self, db, tmp_path, no_side_effects):
        path = tmp_path / "broken.zip"
        path.write_text("not an archive")
        deployment = await agent.deploy(str(path), "Broken")
        assert deployment.status == DeploymentStatus.failed.value
        assert deployment.error_log.startswith("ArchiveInvalid")

    @pytest.mark.asyncio
    async def test_same_name_twice(self, db, tmp_path, no_side_effects):
        first = await agent.deploy(make_zip(tmp_path / "a.zip", {"a.txt": "a"}), "Demo")
        second = await agent.deploy(make_zip(tmp_path / "b.zip", {"b.txt": "b"}), "Demo")
        assert first.subdomain == "demo"
        assert second.subdomain != first.subdomain
        assert second.subdomain.startswith("demo-")


class TestRemove:
    @pytest.mark.asyncio
    async def test_every_artifact_is_removed(self, db, tmp_path):
        upload = tmp_path / "upload.zip"
        upload.write_text("zip")
        image = tmp_path / "shot.png"
        image.write_bytes(b"png")
        deployment = await registry.create_deployment("Gone", str(upload))
        await registry.set_screenshot(deployment.id, str(image))
        os.makedirs(agent.workdir(deployment.id))
        await agent.remove(deployment.id)
        assert not upload.exists()
        assert not image.exists()
        assert not os.path.exists(agent.workdir(deployment.id))
        assert not await Deployment.exists(id=deployment.id)

    @pytest.mark.asyncio
    async def test_failing_step_does_not_block_the_rest(self, db, tmp_path):
        upload = tmp_path / "upload.zip"
        upload.write_text("zip")
        deployment = await registry.create_deployment("Gone", str(upload))
        with patch("launchpad.processes.stop", side_effect=RuntimeError("boom")):
            await agent.remove(deployment.id)
        assert not upload.exists()
        assert not await Deployment.exists(id=deployment.id)


class TestDemoExpiry:
    """An expired demo is fully cleaned up by the sweeper."""

    @pytest.mark.asyncio
    async def test_expired_demo_is_swept(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "demo.zip", {"index.html": "<h1>demo</h1>"})
        deployment = await agent.deploy(archive, "Demo", is_demo=True)
        assert deployment.status == DeploymentStatus.running.value
        assert deployment.expires_at is not None

        report = await sweeper.sweep(now=timezone.now() + timedelta(minutes=31))
        assert report.removed == [deployment.id]
        assert not await Deployment.exists(id=deployment.id)
        assert not os.path.exists(agent.workdir(deployment.id))
        assert not os.path.exists(archive)
        assert ports.is_port_free(deployment.port)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_interrupted_rows_are_failed(self, db):
        deployment = await registry.create_deployment("Interrupted")
        await agent.reconcile()
        row = await registry.get_deployment(deployment.id)
        assert row.status == DeploymentStatus.failed.value
        assert "Interrupted" in row.error_log


class TestPortRace:
    """A reserved port taken by another process is replaced."""

    @pytest.mark.asyncio
    async def test_lost_port_is_replaced(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "site.zip", {"dist/index.html": "<h1>raced</h1>"})
        reserve_port = ports.reserve_port
        taken = []

        async def reserve_then_lose(id, **kwargs):
            port = await reserve_port(id, **kwargs)
            if not taken:
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sock.bind(("127.0.0.1", port))
                sock.listen()
                taken.append(sock)
            return port

        with patch("launchpad.ports.reserve_port", reserve_then_lose):
            deployment = await agent.deploy(archive, "Raced")
        lost = taken[0].getsockname()[1]
        try:
            assert deployment.status == DeploymentStatus.running.value
            assert deployment.port != lost
            assert f"Port {lost} is already in use" in deployment.build_log
        finally:
            taken[0].close()
            await agent.remove(deployment.id)

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_limit(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "site.zip", {"dist/index.html": "<h1>raced</h1>"})
        reserve_port = ports.reserve_port
        taken = []

        async def reserve_then_lose(id, **kwargs):
            port = await reserve_port(id, **kwargs)
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.bind(("127.0.0.1", port))
            sock.listen()
            taken.append(sock)
            return port

        try:
            with patch("launchpad.ports.reserve_port", reserve_then_lose):
                deployment = await agent.deploy(archive, "Raced")
        finally:
            for sock in taken:
                sock.close()
        assert len(taken) == PORT_RETRY_LIMIT
        assert deployment.status == DeploymentStatus.failed.value
        assert deployment.error_log.startswith("PortInUse")


class TestRemovedDuringPipeline:
    """Removing a deployment while it builds leaves it removed."""

    @pytest.mark.asyncio
    async def test_removed_before_preview(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "site.zip", {"dist/index.html": "<h1>gone</h1>"})
        reserve_port = ports.reserve_port

        async def remove_then_reserve(id, **kwargs):
            await agent.remove(id)
            return await reserve_port(id, **kwargs)

        with patch("launchpad.ports.reserve_port", remove_then_reserve):
            deployment = await agent.deploy(archive, "Gone")
        assert deployment.site_name == "Gone"
        assert not await Deployment.exists(id=deployment.id)
        assert not os.path.exists(agent.workdir(deployment.id))
        no_side_effects.assert_not_called()

    @pytest.mark.asyncio
    async def test_removed_once_preview_started(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "site.zip", {"dist/index.html": "<h1>gone</h1>"})
        mark_running = registry.mark_running
        started = {}

        async def remove_then_mark(id, **kwargs):
            started.update(kwargs)
            await agent.remove(id)
            return await mark_running(id, **kwargs)

        with patch("launchpad.registry.mark_running", remove_then_mark):
            deployment = await agent.deploy(archive, "Gone")
        assert deployment.status == DeploymentStatus.processing.value
        assert not await Deployment.exists(id=deployment.id)
        assert not os.path.exists(agent.workdir(deployment.id))
        assert not processes.is_alive(started["pid"])
        assert ports.is_port_free(started["port"])
        no_side_effects.assert_not_called()

    @pytest.mark.asyncio
    async def test_background_pipeline_of_removed_row(self, db, tmp_path, no_side_effects):
        archive = make_zip(tmp_path / "site.zip", {"dist/index.html": "<h1>gone</h1>"})
        deployment = await agent.submit(archive, "Gone")
        await agent.remove(deployment.id)
        await asyncio.gather(*agent._tasks)
        assert not await Deployment.exists(id=deployment.id)
