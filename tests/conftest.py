import os
import tempfile

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="launchpad-tests-"))
os.environ.setdefault("INSTALL_RETRY_DELAY", "0")
os.environ.setdefault("KILL_GRACE_SECONDS", "1")

import pytest_asyncio
from tortoise import Tortoise


TEST_ORM = {
    "connections": {"default": "sqlite://:memory:"},
    "apps": {
        "launchpad": {
            "models": ["launchpad.models"],
            "default_connection": "default",
        },
    },
    "use_tz": True,
    "timezone": "UTC",
}


@pytest_asyncio.fixture
async def db():
    await Tortoise.init(config=TEST_ORM)
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()
