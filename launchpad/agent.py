from typing import List, Set

import os
import shutil
import asyncio

import structlog

from launchpad import (
    builder,
    detector,
    extractor,
    installer,
    ports,
    processes,
    registry,
    screenshot,
)
from launchpad.models import Deployment
from launchpad.preview import PreviewProcess, start_preview
from launchpad.constants import DeploymentStatus, Framework, ProjectKind
from launchpad.exceptions import PortInUse
from launchpad.settings import DEPLOYMENTS_DIR, PORT_RETRY_LIMIT


log = structlog.get_logger()

# pipelines started in the background must be referenced until they finish
_tasks: Set[asyncio.Task] = set()


def workdir(id: str) -> str:
    """Working directory of a deployment, also its extraction root.

    Args:
        id (str): deployment id.

    Returns:
        str: absolute directory path.
    """
    return os.path.join(DEPLOYMENTS_DIR, id)


def preview_log(id: str) -> str:
    return os.path.join(workdir(id), ".preview.log")


class BuildLog:
    """Build log persisted on every step so followers see progress."""

    def __init__(self, id: str):
        self.id = id
        self.parts: List[str] = []

    @property
    def text(self) -> str:
        return "".join(self.parts)

    async def write(self, text: str):
        if text and not text.endswith("\n"):
            text += "\n"
        self.parts.append(text)
        await registry.record_progress(self.id, build_log=self.text)


async def start_on_free_port(
    id: str,
    target: detector.ServeTarget,
    framework: Framework,
    build_log: BuildLog,
) -> PreviewProcess:
    """Reserve a port and start the preview on it.

    A port bound by another process after it was found free is given up and
    a fresh one is reserved, at most PORT_RETRY_LIMIT times.
    """
    lost: Set[int] = set()
    for attempt in range(1, PORT_RETRY_LIMIT + 1):
        port = await ports.reserve_port(id, exclude=lost)
        await build_log.write(f"Starting preview server on port {port}...")
        try:
            return await start_preview(target, port, framework, preview_log(id))
        except PortInUse as e:
            if attempt == PORT_RETRY_LIMIT:
                raise
            lost.add(e.port)
            log.warning(f"[preview] port {e.port} of {id} was taken, reserving another one")
            await build_log.write(f"Port {e.port} is already in use")


async def run_pipeline(id: str) -> Deployment | None:
    """Take a ``processing`` deployment to ``running`` or ``failed``.

    Any error is recorded as ``ClassName: message`` in ``error_log``; the
    working directory of a failed deployment is removed. A deployment removed
    while its pipeline runs is left removed and its preview is stopped.

    Args:
        id (str): deployment id.

    Returns:
        Deployment | None: the row in its terminal state, the last snapshot
        when it was removed meanwhile, None when it was gone from the start.
    """
    deployment = await Deployment.get_or_none(id=id)
    if deployment is None:
        log.warning(f"deployment {id} was removed before its pipeline started")
        return None
    destination = workdir(id)
    build_log = BuildLog(id)
    preview: PreviewProcess | None = None
    try:
        await build_log.write("Extracting archive...")
        report = await asyncio.to_thread(
            extractor.extract,
            deployment.file_path,
            destination,
            check_size=deployment.is_demo,
        )
        await build_log.write(
            f"Extracted {report.extracted} files ({report.total_size} bytes), "
            f"skipped {len(report.skipped)}"
        )
        info = detector.locate_project(destination)
        await build_log.write(
            f"Found {info.kind.value} ({info.framework.value}) at "
            f"{os.path.relpath(info.path, destination)}"
        )
        if info.kind == ProjectKind.project:
            await build_log.write("Installing dependencies...")
            await build_log.write(await installer.install_dependencies(info.path))
            await build_log.write("Building project...")
            await build_log.write(await builder.build_project(info.path, info.framework))
            framework = detector.validate_framework(info.path, info.framework)
            info = info.model_copy(update={"framework": framework})
        target = detector.resolve_output(info)
        preview = await start_on_free_port(id, target, info.framework, build_log)
        await build_log.write(preview.output)
        running = await registry.mark_running(
            id,
            port=preview.port,
            pid=preview.pid,
            build_log=build_log.text,
        )
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        log.warning(f"deployment {id} failed: {error}")
        await registry.mark_failed(id, error, build_log=build_log.text or None)
        if preview is not None:
            await processes.stop(preview.pid, preview.port)
        await asyncio.to_thread(shutil.rmtree, destination, ignore_errors=True)
        return await _current(id, deployment)
    if not running:
        await processes.stop(preview.pid, preview.port)
        await asyncio.to_thread(shutil.rmtree, destination, ignore_errors=True)
        return await _current(id, deployment)
    log.info(f"deployment {id} running on port {preview.port} (pid {preview.pid})")
    screenshot.schedule(id, preview.port)
    return await _current(id, deployment)


async def _current(id: str, snapshot: Deployment) -> Deployment:
    deployment = await Deployment.get_or_none(id=id)
    if deployment is None:
        log.info(f"deployment {id} was removed while its pipeline ran")
        return snapshot
    return deployment


async def deploy(
    file_path: str,
    site_name: str,
    is_demo: bool = False,
) -> Deployment:
    """Register an upload and run its pipeline to completion."""
    deployment = await registry.create_deployment(site_name, file_path, is_demo)
    log.info(f"deploying {site_name!r} as {deployment.subdomain} ({deployment.id})")
    return await run_pipeline(deployment.id) or deployment


async def submit(
    file_path: str,
    site_name: str,
    is_demo: bool = False,
) -> Deployment:
    """Register an upload and run its pipeline in the background.

    Returns:
        Deployment: the new ``processing`` row.
    """
    deployment = await registry.create_deployment(site_name, file_path, is_demo)
    log.info(f"queued {site_name!r} as {deployment.subdomain} ({deployment.id})")
    task = asyncio.create_task(run_pipeline(deployment.id))
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return deployment


def _unlink(path: str | None):
    if path and os.path.isfile(path):
        os.remove(path)


async def remove(id: str) -> Deployment:
    """Remove a deployment and everything it owns.

    Every cleanup step is attempted even when an earlier one failed.

    Args:
        id (str): deployment id.

    Raises:
        DeploymentNotFound: unknown id.

    Returns:
        Deployment: the removed row.
    """
    deployment = await registry.get_deployment(id)
    try:
        await processes.stop(deployment.pid, deployment.port)
    except Exception as e:
        log.exception(f"failed to stop preview of {id}: {e}")
    for path in (deployment.screenshot_path, deployment.file_path):
        try:
            _unlink(path)
        except OSError as e:
            log.exception(f"failed to delete {path}: {e}")
    try:
        await asyncio.to_thread(shutil.rmtree, workdir(id), ignore_errors=True)
    except Exception as e:
        log.exception(f"failed to delete working directory of {id}: {e}")
    try:
        await registry.delete(id)
    except Exception as e:
        log.exception(f"failed to delete deployment {id}: {e}")
    log.info(f"removed deployment {id} ({deployment.subdomain})")
    return deployment


async def reconcile():
    """Check registry state against the OS after a control plane restart.

    ``processing`` rows lost their pipeline and are failed; ``running`` rows
    whose pid and port are both dead are reported.
    """
    for deployment in await registry.list_deployments(DeploymentStatus.processing):
        log.warning(f"deployment {deployment.id} was interrupted, marking failed")
        await registry.mark_failed(
            deployment.id,
            "Interrupted: the control plane restarted during deployment",
            build_log=deployment.build_log,
        )
    for deployment in await registry.list_deployments(DeploymentStatus.running):
        alive = deployment.pid and processes.is_alive(deployment.pid)
        if alive or (deployment.port and processes.pids_on_port(deployment.port)):
            continue
        log.warning(
            f"deployment {deployment.id} ({deployment.subdomain}) has no live process "
            f"on pid {deployment.pid} or port {deployment.port}"
        )
