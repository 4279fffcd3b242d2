from enum import Enum


class DeploymentStatus(str, Enum):
    processing = "processing"
    running = "running"
    failed = "failed"


class ProjectKind(str, Enum):
    """What the locator found inside an extracted archive."""

    # a manifest, rebuildable from source
    project = "project"
    # pre-built static output
    static = "static"
    # pre-built server-rendered output
    server = "server"


class Framework(str, Enum):
    vite = "vite"
    nextjs = "nextjs"
    create_react_app = "create-react-app"
    vue_cli = "vue-cli"
    angular = "angular"
    static = "static"


class OutputShape(str, Enum):
    """How a built project has to be served."""

    spa = "spa"
    static = "static"
    server = "server"


MANIFEST = "package.json"
LOCAL_BIN = "node_modules/.bin"

# archive entries
BLOCKED_EXTENSIONS = {".exe", ".bat", ".cmd", ".sh", ".bin", ".app"}
METADATA_DIRS = {"__MACOSX"}
METADATA_FILES = {".DS_Store", "Thumbs.db"}

# lock file -> package manager, in priority order
LOCK_FILES = [
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
    ("package-lock.json", "npm"),
]
FALLBACK_MANAGER = "npm"

# framework -> cli binary under node_modules/.bin
FRAMEWORK_CLI = {
    Framework.vite: "vite",
    Framework.nextjs: "next",
    Framework.create_react_app: "react-scripts",
    Framework.vue_cli: "vue-cli-service",
    Framework.angular: "ng",
}

STATIC_OUTPUT_DIRS = ["dist", "build", "out"]
SERVER_OUTPUT_DIR = ".next"
