from typing import List

from datetime import datetime

from pydantic import BaseModel, ConfigDict, computed_field

from launchpad.constants import DeploymentStatus


class DeploymentOut(BaseModel):
    """Public fields of a deployment row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    site_name: str
    subdomain: str
    status: DeploymentStatus
    port: int | None = None
    pid: int | None = None
    build_log: str | None = None
    error_log: str | None = None
    screenshot_url: str | None = None
    public_url: str
    is_demo: bool
    expires_at: datetime | None = None
    is_expired: bool
    created_at: datetime
    updated_at: datetime


class DemoDeploymentOut(DeploymentOut):
    @computed_field
    @property
    def can_manage(self) -> bool:
        return self.is_demo


class DemoDeploymentList(BaseModel):
    deployments: List[DemoDeploymentOut]
