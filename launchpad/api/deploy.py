from typing import List

import os
import re
import json
import time
import asyncio
from collections import deque

import structlog
from sse_starlette.sse import EventSourceResponse
from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse

from launchpad import agent, registry
from launchpad.models import Deployment
from launchpad.schemas import DeploymentOut
from launchpad.constants import DeploymentStatus
from launchpad.exceptions import UploadTooLarge
from launchpad.settings import UPLOADS_DIR


router = APIRouter()
log = structlog.get_logger()

CHUNK_SIZE = 1024 * 1024


def sanitize_filename(filename: str | None) -> str:
    name = os.path.basename((filename or "").replace("\\", "/"))
    name = re.sub(r"[^A-Za-z0-9._-]", "_", name).lstrip(".")
    return name or "upload"


def original_filename(path: str) -> str:
    """Strip the ``[demo-]<epoch ms>-`` prefix from a stored upload."""
    return re.sub(r"^(?:demo-)?\d+-", "", os.path.basename(path))


async def save_upload(
    file: UploadFile,
    prefix: str = "",
    limit: int | None = None,
) -> str:
    """Stream an upload into the private upload area.

    Args:
        file (UploadFile): multipart file.
        prefix (str): file name prefix.
        limit (int | None): maximum size in bytes, None for unlimited.

    Raises:
        UploadTooLarge: the upload exceeded ``limit``; nothing is kept.

    Returns:
        str: absolute path of the stored file.
    """
    if limit is not None and file.size is not None and file.size > limit:
        raise UploadTooLarge(f"File size exceeds {limit // 1024 // 1024}MB limit")
    os.makedirs(UPLOADS_DIR, exist_ok=True)
    name = f"{prefix}{int(time.time() * 1000)}-{sanitize_filename(file.filename)}"
    path = os.path.abspath(os.path.join(UPLOADS_DIR, name))
    size = 0
    try:
        with open(path, "wb") as target:
            while chunk := await file.read(CHUNK_SIZE):
                size += len(chunk)
                if limit is not None and size > limit:
                    raise UploadTooLarge(f"File size exceeds {limit // 1024 // 1024}MB limit")
                target.write(chunk)
    except Exception:
        if os.path.exists(path):
            os.remove(path)
        raise
    log.info(f"stored upload {name} ({size} bytes)")
    return path


def download_response(deployment: Deployment) -> FileResponse:
    path = deployment.file_path
    if not path or not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Uploaded archive is no longer available")
    return FileResponse(
        path,
        media_type="application/octet-stream",
        filename=original_filename(path),
    )


@router.post(
    "/upload",
    description="Upload an archive and deploy it",
)
async def upload(
    file: UploadFile = File(),
    site_name: str = Form(default="Untitled Site", alias="siteName"),
    wait: bool = Query(default=False),
) -> DeploymentOut:
    """Trusted upload, no size ceiling.

    Args:
        file (UploadFile): zip or tar archive.
        site_name (str): display name, also the subdomain seed.
        wait (bool): answer after the pipeline finished instead of right away.
    """
    file_path = await save_upload(file)
    if wait:
        deployment = await agent.deploy(file_path, site_name)
    else:
        deployment = await agent.submit(file_path, site_name)
    return DeploymentOut.model_validate(deployment)


@router.get(
    "",
    description="List deployments",
)
async def reads(
    status: DeploymentStatus | None = Query(default=None),
) -> List[DeploymentOut]:
    deployments = await registry.list_deployments(status)
    return [DeploymentOut.model_validate(item) for item in deployments]


@router.get(
    "/{id}",
    description="Get a deployment",
)
async def read(id: str) -> DeploymentOut:
    return DeploymentOut.model_validate(await registry.get_deployment(id))


@router.delete(
    "/{id}",
    description="Remove a deployment",
)
async def remove(id: str) -> DeploymentOut:
    return DeploymentOut.model_validate(await agent.remove(id))


@router.get(
    "/{id}/download",
    description="Download the uploaded archive",
)
async def download(id: str):
    return download_response(await registry.get_deployment(id))


@router.get(
    "/{id}/logs/tail",
    description="Last lines of the preview server log",
)
async def tail_logs(
    id: str,
    tail: int = Query(default=100, ge=1, le=10000),
) -> List[str]:
    await registry.get_deployment(id)
    path = agent.preview_log(id)
    if not os.path.isfile(path):
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as file:
        return [line.rstrip("\n") for line in deque(file, maxlen=tail)]


class DeploymentEvents:
    """Status changes and build log growth of one deployment.

    Ends after the terminal status was sent, when the row disappears or when
    the client disconnects.
    """

    def __init__(
        self,
        request: Request,
        id: str,
        interval: float = 1,
    ):
        self.request = request
        self.id = id
        self.interval = interval
        self.status: str | None = None
        self.offset = 0
        self.done = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        while not self.done:
            if await self.request.is_disconnected():
                break
            deployment = await Deployment.get_or_none(id=self.id)
            if deployment is None:
                self.done = True
                return json.dumps({"id": self.id, "status": "removed"})
            build_log = deployment.build_log or ""
            chunk = build_log[self.offset:]
            if deployment.status != self.status or chunk:
                self.status = deployment.status
                self.offset = len(build_log)
                self.done = deployment.status != DeploymentStatus.processing.value
                return json.dumps(
                    {
                        "id": self.id,
                        "status": deployment.status,
                        "log": chunk,
                        "port": deployment.port,
                        "error": deployment.error_log,
                    }
                )
            await asyncio.sleep(self.interval)
        raise StopAsyncIteration


@router.get(
    "/{id}/events",
    description="Follow a deployment until it is running or failed",
)
async def events(request: Request, id: str):
    await registry.get_deployment(id)
    return EventSourceResponse(DeploymentEvents(request, id), send_timeout=60)
