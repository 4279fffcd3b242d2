from datetime import timedelta

import pytest
from tortoise import timezone

from launchpad import registry
from launchpad.models import Deployment
from launchpad.constants import DeploymentStatus
from launchpad.exceptions import DeploymentNotFound


class TestSlugify:
    @pytest.mark.parametrize(
        "site_name, expected",
        [
            ("My Site", "my-site"),
            ("  Hello,   World!! ", "hello-world"),
            ("Ünïcode Café", "n-code-caf"),
            ("---", "site"),
            ("", "site"),
            ("a" * 80, "a" * 63),
        ],
    )
    def test_slug(self, site_name, expected):
        assert registry.slugify(site_name) == expected


class TestCreateDeployment:
    """Row creation and subdomain uniqueness."""

    @pytest.mark.asyncio
    async def test_processing_row(self, db):
        deployment = await registry.create_deployment("My Site", "/tmp/upload.zip")
        assert deployment.status == DeploymentStatus.processing.value
        assert deployment.subdomain == "my-site"
        assert len(deployment.id) == 36
        assert deployment.expires_at is None
        assert not deployment.is_expired

    @pytest.mark.asyncio
    async def test_duplicate_names_get_distinct_subdomains(self, db):
        first = await registry.create_deployment("Demo")
        second = await registry.create_deployment("Demo")
        assert first.subdomain == "demo"
        assert second.subdomain != first.subdomain
        assert second.subdomain.startswith("demo-")

    @pytest.mark.asyncio
    async def test_demo_expiry(self, db):
        before = timezone.now()
        deployment = await registry.create_deployment("Demo", is_demo=True)
        assert deployment.is_demo
        assert deployment.expires_at - before >= timedelta(minutes=29)
        assert deployment.expires_at - before <= timedelta(minutes=31)


class TestTransitions:
    """Status only moves forward out of processing."""

    @pytest.mark.asyncio
    async def test_running_requires_port_and_pid(self, db):
        deployment = await registry.create_deployment("Site")
        with pytest.raises(ValueError):
            await registry.mark_running(deployment.id, port=None, pid=123, build_log="")

    @pytest.mark.asyncio
    async def test_running_is_terminal(self, db):
        deployment = await registry.create_deployment("Site")
        assert await registry.mark_running(deployment.id, port=3001, pid=123, build_log="ok")
        assert not await registry.mark_failed(deployment.id, "too late")
        assert not await registry.record_progress(deployment.id, port=4000)
        row = await registry.get_deployment(deployment.id)
        assert row.status == DeploymentStatus.running.value
        assert (row.port, row.pid) == (3001, 123)
        assert row.error_log is None

    @pytest.mark.asyncio
    async def test_failed_is_terminal_and_clears_port(self, db):
        deployment = await registry.create_deployment("Site")
        await registry.record_progress(deployment.id, port=3002)
        assert await registry.mark_failed(deployment.id, "BuildFailed: boom", build_log="log")
        assert not await registry.mark_running(deployment.id, port=3002, pid=1, build_log="")
        row = await registry.get_deployment(deployment.id)
        assert row.status == DeploymentStatus.failed.value
        assert row.port is None
        assert row.error_log == "BuildFailed: boom"


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_missing(self, db):
        with pytest.raises(DeploymentNotFound):
            await registry.get_deployment("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_running_by_subdomain(self, db):
        deployment = await registry.create_deployment("Site")
        assert await registry.get_running_by_subdomain("site") is None
        await registry.mark_running(deployment.id, port=3001, pid=1, build_log="")
        row = await registry.get_running_by_subdomain("site")
        assert row.id == deployment.id

    @pytest.mark.asyncio
    async def test_expired_demos(self, db):
        demo = await registry.create_deployment("Demo", is_demo=True)
        await registry.create_deployment("Owned")
        assert await registry.expired_demos() == []
        later = timezone.now() + timedelta(minutes=31)
        expired = await registry.expired_demos(later)
        assert [item.id for item in expired] == [demo.id]

    @pytest.mark.asyncio
    async def test_referenced_files_and_delete(self, db, tmp_path):
        deployment = await registry.create_deployment("Site", str(tmp_path / "a.zip"))
        assert await registry.referenced_files() == {str(tmp_path / "a.zip")}
        assert await registry.delete(deployment.id) == 1
        assert not await Deployment.exists(id=deployment.id)
