import uuid

from tortoise import models, fields, timezone

from launchpad.settings import DEPLOYMENT_DOMAIN


def generate_id() -> str:
    return str(uuid.uuid4())


class Deployment(models.Model):
    id = fields.CharField(pk=True, max_length=36, default=generate_id)
    site_name = fields.CharField(max_length=255)
    subdomain = fields.CharField(max_length=255, unique=True)
    status = fields.CharField(max_length=32, index=True)
    port = fields.IntField(null=True)
    pid = fields.IntField(null=True)
    build_log = fields.TextField(null=True)
    error_log = fields.TextField(null=True)
    file_path = fields.CharField(max_length=1024, null=True)
    screenshot_path = fields.CharField(max_length=1024, null=True)
    is_demo = fields.BooleanField(default=False, index=True)
    expires_at = fields.DatetimeField(null=True, index=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "deployments"
        ordering = ["-created_at"]

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at < timezone.now()

    @property
    def public_url(self) -> str:
        return f"http://{self.subdomain}.{DEPLOYMENT_DOMAIN}"

    @property
    def screenshot_url(self) -> str | None:
        if not self.screenshot_path:
            return None
        return f"/screenshots/{self.id}.png"
