"""Demo endpoints: size limited uploads that expire, managed by anyone."""

import structlog
from fastapi import APIRouter, File, Form, UploadFile

from launchpad import agent, registry, sweeper
from launchpad.api.deploy import download_response, save_upload
from launchpad.models import Deployment
from launchpad.schemas import DemoDeploymentList, DemoDeploymentOut
from launchpad.exceptions import Unauthorized
from launchpad.settings import MAX_UPLOAD_SIZE, DEMO_TTL_MINUTES


router = APIRouter()
log = structlog.get_logger()


async def get_demo(id: str) -> Deployment:
    deployment = await registry.get_deployment(id)
    if not deployment.is_demo:
        raise Unauthorized("Demo users can only manage demo deployments")
    return deployment


@router.post(
    "/upload",
    description=f"Upload a demo project, removed after {DEMO_TTL_MINUTES} minutes",
)
async def upload(
    file: UploadFile = File(),
    site_name: str = Form(default="Demo Project", alias="siteName"),
) -> DemoDeploymentOut:
    file_path = await save_upload(file, prefix="demo-", limit=MAX_UPLOAD_SIZE)
    deployment = await agent.submit(file_path, site_name, is_demo=True)
    return DemoDeploymentOut.model_validate(deployment)


@router.get(
    "/deployments",
    description="List deployments after removing expired demos",
)
async def deployments() -> DemoDeploymentList:
    await sweeper.sweep()
    items = await registry.list_deployments()
    return DemoDeploymentList(
        deployments=[DemoDeploymentOut.model_validate(item) for item in items],
    )


@router.delete(
    "/deployments/{id}",
    description="Remove a demo deployment",
)
async def remove(id: str) -> DemoDeploymentOut:
    await get_demo(id)
    return DemoDeploymentOut.model_validate(await agent.remove(id))


@router.get(
    "/deployments/{id}/download",
    description="Download the archive of a demo deployment",
)
async def download(id: str):
    return download_response(await get_demo(id))


@router.api_route(
    "/cleanup",
    methods=["GET", "POST"],
    description="Remove expired demo deployments and orphaned uploads",
)
async def cleanup() -> sweeper.SweepReport:
    return await sweeper.sweep()
