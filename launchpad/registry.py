"""Deployment registry.

Every component reads deployment state through these helpers; status only ever
moves ``processing -> running`` or ``processing -> failed``.
"""

from typing import List, Set

import os
import re
import time
from datetime import datetime, timedelta

import structlog
from tortoise import timezone
from tortoise.exceptions import IntegrityError

from launchpad.models import Deployment
from launchpad.constants import DeploymentStatus
from launchpad.exceptions import DeploymentNotFound
from launchpad.settings import DEMO_TTL_MINUTES


log = structlog.get_logger()


def slugify(site_name: str) -> str:
    """Turn a display name into a subdomain label.

    Args:
        site_name (str): user supplied display name.

    Returns:
        str: lower-case label made of ``[a-z0-9-]``.
    """
    slug = re.sub(r"[^a-z0-9-]", "-", site_name.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:63].rstrip("-") or "site"


async def generate_subdomain(site_name: str) -> str:
    subdomain = slugify(site_name)
    if await Deployment.filter(subdomain=subdomain).exists():
        return f"{subdomain}-{int(time.time() * 1000)}"
    return subdomain


async def create_deployment(
    site_name: str,
    file_path: str | None = None,
    is_demo: bool = False,
) -> Deployment:
    """Insert a ``processing`` row for an accepted upload.

    Args:
        site_name (str): display name.
        file_path (str | None): uploaded archive.
        is_demo (bool): demo deployments expire after DEMO_TTL_MINUTES.

    Returns:
        Deployment: the new row.
    """
    expires_at = None
    if is_demo:
        expires_at = timezone.now() + timedelta(minutes=DEMO_TTL_MINUTES)
    subdomain = await generate_subdomain(site_name)
    for attempt in range(5):
        try:
            return await Deployment.create(
                site_name=site_name,
                subdomain=subdomain,
                status=DeploymentStatus.processing.value,
                file_path=file_path,
                is_demo=is_demo,
                expires_at=expires_at,
            )
        except IntegrityError:
            log.warning(f"subdomain {subdomain} taken concurrently, retrying")
            subdomain = f"{slugify(site_name)}-{int(time.time() * 1000)}{attempt}"
    raise IntegrityError(f"could not allocate a subdomain for {site_name!r}")


async def get_deployment(id: str) -> Deployment:
    deployment = await Deployment.get_or_none(id=id)
    if deployment is None:
        raise DeploymentNotFound(f"Deployment {id} not found")
    return deployment


async def list_deployments(status: DeploymentStatus | None = None) -> List[Deployment]:
    if status is None:
        return await Deployment.all()
    return await Deployment.filter(status=status.value).all()


async def get_running_by_subdomain(subdomain: str) -> Deployment | None:
    return await Deployment.get_or_none(
        subdomain=subdomain,
        status=DeploymentStatus.running.value,
    )


async def record_progress(id: str, **fields) -> bool:
    """Intermediate update of a row still being processed."""
    updated = await Deployment.filter(
        id=id,
        status=DeploymentStatus.processing.value,
    ).update(**fields)
    return updated > 0


async def mark_running(id: str, port: int, pid: int, build_log: str) -> bool:
    if port is None or pid is None:
        raise ValueError("a running deployment needs both port and pid")
    updated = await record_progress(
        id,
        status=DeploymentStatus.running.value,
        port=port,
        pid=pid,
        build_log=build_log,
    )
    if not updated:
        log.warning(f"deployment {id} is no longer processing, running state dropped")
    return updated


async def mark_failed(id: str, error: str, build_log: str | None = None) -> bool:
    updated = await record_progress(
        id,
        status=DeploymentStatus.failed.value,
        error_log=error,
        build_log=build_log,
        port=None,
        pid=None,
    )
    if not updated:
        log.warning(f"deployment {id} is no longer processing, failure not recorded")
    return updated


async def set_screenshot(id: str, path: str) -> bool:
    updated = await Deployment.filter(id=id).update(screenshot_path=path)
    return updated > 0


async def expired_demos(now: datetime | None = None) -> List[Deployment]:
    if now is None:
        now = timezone.now()
    return await Deployment.filter(is_demo=True, expires_at__lt=now).all()


async def referenced_files() -> Set[str]:
    paths = await Deployment.filter(file_path__isnull=False).values_list(
        "file_path",
        flat=True,
    )
    return {os.path.abspath(path) for path in paths}


async def delete(id: str) -> int:
    return await Deployment.filter(id=id).delete()
