"""Expiry and garbage collection of demo deployments and stray uploads."""

from typing import List

import os
import time
import asyncio
from datetime import datetime

import structlog
from pydantic import BaseModel

from launchpad import agent, registry
from launchpad.settings import UPLOADS_DIR, SWEEP_INTERVAL, ORPHAN_GRACE_SECONDS


log = structlog.get_logger()

_lock = asyncio.Lock()


class SweepReport(BaseModel):
    removed: List[str] = []
    orphans: List[str] = []


async def remove_expired(now: datetime | None = None) -> List[str]:
    removed = []
    for deployment in await registry.expired_demos(now):
        try:
            await agent.remove(deployment.id)
            removed.append(deployment.id)
        except Exception as e:
            log.exception(f"[sweep] failed to remove expired deployment {deployment.id}: {e}")
    return removed


async def remove_orphans(grace: float = ORPHAN_GRACE_SECONDS) -> List[str]:
    """Delete uploads no deployment references.

    Files younger than ``grace`` seconds are kept, their deployment row may
    not exist yet.
    """
    if not os.path.isdir(UPLOADS_DIR):
        return []
    referenced = await registry.referenced_files()
    cutoff = time.time() - grace
    orphans = []
    for name in os.listdir(UPLOADS_DIR):
        path = os.path.abspath(os.path.join(UPLOADS_DIR, name))
        if path in referenced or not os.path.isfile(path):
            continue
        try:
            if os.path.getmtime(path) > cutoff:
                continue
            os.remove(path)
            orphans.append(path)
        except OSError as e:
            log.warning(f"[sweep] failed to delete orphan upload {path}: {e}")
    return orphans


async def sweep(now: datetime | None = None, grace: float = ORPHAN_GRACE_SECONDS) -> SweepReport:
    """Remove expired demo deployments, then orphaned uploads.

    Concurrent calls run one after another, so calling it from several
    triggers at once is safe.

    Args:
        now (datetime | None): reference time for expiry, defaults to now.
        grace (float): minimum age in seconds of an orphan upload.

    Returns:
        SweepReport: removed deployment ids and deleted upload paths.
    """
    async with _lock:
        report = SweepReport(
            removed=await remove_expired(now),
            orphans=await remove_orphans(grace),
        )
    if report.removed or report.orphans:
        log.info(
            f"[sweep] removed {len(report.removed)} expired deployments "
            f"and {len(report.orphans)} orphan uploads"
        )
    return report


async def monitor(interval: float = SWEEP_INTERVAL):
    while True:
        try:
            await sweep()
        except Exception as e:
            log.exception(f"[sweep] error: {e}")
        finally:
            await asyncio.sleep(interval)
