import os


APP_NAME = "launchpad"
DEBUG = os.environ.get("DEBUG")

# storage layout
DATA_DIR = os.path.abspath(os.environ.get("DATA_DIR", default="./data"))
DEPLOYMENTS_DIR = os.environ.get(
    "DEPLOYMENTS_DIR",
    default=os.path.join(DATA_DIR, "deployments"),
)
UPLOADS_DIR = os.environ.get(
    "UPLOADS_DIR",
    default=os.path.join(DATA_DIR, "uploads"),
)
SCREENSHOTS_DIR = os.environ.get(
    "SCREENSHOTS_DIR",
    default=os.path.join(DATA_DIR, "screenshots"),
)

# registry database
DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    default=f"sqlite://{os.path.join(DATA_DIR, 'launchpad.sqlite3')}",
)
TORTOISE_ORM = {
    "connections": {"default": DATABASE_URL},
    "apps": {
        APP_NAME: {
            "models": ["launchpad.models", "aerich.models"],
            "default_connection": "default",
        },
    },
    "use_tz": True,
    "timezone": "UTC",
}

# routing and ports
DEPLOYMENT_DOMAIN = os.environ.get("DEPLOYMENT_DOMAIN", default="preview.localhost")
CONTROL_PLANE_PORT = int(os.environ.get("CONTROL_PLANE_PORT", default=8000))
CONTROL_PLANE_URL = os.environ.get(
    "CONTROL_PLANE_URL",
    default=f"http://127.0.0.1:{CONTROL_PLANE_PORT}",
)
PROXY_HOST = os.environ.get("PROXY_HOST", default="0.0.0.0")
PROXY_PORT = int(os.environ.get("PROXY_PORT", default=8080))
PORT_RANGE_START = int(os.environ.get("PORT_RANGE_START", default=3001))
PORT_RANGE_END = int(os.environ.get("PORT_RANGE_END", default=9999))
PORT_PROBE_LIMIT = int(os.environ.get("PORT_PROBE_LIMIT", default=200))
PORT_RETRY_LIMIT = int(os.environ.get("PORT_RETRY_LIMIT", default=3))

# ceilings and timeouts
MAX_UPLOAD_SIZE = int(os.environ.get("MAX_UPLOAD_SIZE", default=50 * 1024 * 1024))
MAX_EXTRACTED_SIZE = int(os.environ.get("MAX_EXTRACTED_SIZE", default=50 * 1024 * 1024))
PREVIEW_READY_TIMEOUT = float(os.environ.get("PREVIEW_READY_TIMEOUT", default=30))
SCREENSHOT_DELAY = float(os.environ.get("SCREENSHOT_DELAY", default=10))
SCREENSHOT_PROBE_TIMEOUT = float(os.environ.get("SCREENSHOT_PROBE_TIMEOUT", default=5))
DEMO_TTL_MINUTES = int(os.environ.get("DEMO_TTL_MINUTES", default=30))
SWEEP_INTERVAL = int(os.environ.get("SWEEP_INTERVAL", default=300))
ORPHAN_GRACE_SECONDS = int(os.environ.get("ORPHAN_GRACE_SECONDS", default=300))
INSTALL_RETRY_DELAY = float(os.environ.get("INSTALL_RETRY_DELAY", default=5))
KILL_GRACE_SECONDS = float(os.environ.get("KILL_GRACE_SECONDS", default=2))

# child process environment
BASE_PATH = os.environ.get(
    "BASE_PATH",
    default="/usr/local/bin:/usr/bin:/bin:/usr/local/sbin:/usr/sbin:/sbin",
)
