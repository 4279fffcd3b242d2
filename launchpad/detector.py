"""Locate the buildable project inside an extracted archive and classify it."""

from typing import List

import os
import json

import structlog
from pydantic import BaseModel

from launchpad.constants import (
    MANIFEST,
    LOCAL_BIN,
    METADATA_DIRS,
    SERVER_OUTPUT_DIR,
    STATIC_OUTPUT_DIRS,
    Framework,
    OutputShape,
    ProjectKind,
)
from launchpad.exceptions import ProjectNotFound


log = structlog.get_logger()

# dependency name -> framework, first match wins
DEPENDENCY_HINTS = [
    ("next", Framework.nextjs),
    ("@angular/cli", Framework.angular),
    ("@angular/core", Framework.angular),
    ("@vue/cli-service", Framework.vue_cli),
    ("react-scripts", Framework.create_react_app),
    ("vite", Framework.vite),
]
CONFIG_HINTS = [
    ("next.config.js", Framework.nextjs),
    ("next.config.mjs", Framework.nextjs),
    ("next.config.ts", Framework.nextjs),
    ("angular.json", Framework.angular),
    ("vue.config.js", Framework.vue_cli),
    ("vite.config.js", Framework.vite),
    ("vite.config.ts", Framework.vite),
    ("vite.config.mjs", Framework.vite),
    ("vite.config.cjs", Framework.vite),
]
OUTPUT_HINTS = [
    (SERVER_OUTPUT_DIR, Framework.nextjs),
    ("out", Framework.nextjs),
    ("build", Framework.create_react_app),
    ("dist", Framework.vite),
]
SCRIPT_HINTS = [
    ("next build", Framework.nextjs),
    ("ng build", Framework.angular),
    ("vue-cli-service", Framework.vue_cli),
    ("react-scripts", Framework.create_react_app),
    ("vite", Framework.vite),
]


class ProjectInfo(BaseModel):
    kind: ProjectKind
    path: str
    framework: Framework


class ServeTarget(BaseModel):
    """What the preview manager serves and how."""

    path: str
    shape: OutputShape
    # static output directory usable as a fallback, if any
    static_dir: str | None = None


def read_manifest(path: str) -> dict:
    try:
        with open(os.path.join(path, MANIFEST), "r", encoding="utf-8") as file:
            data = json.load(file)
    except (OSError, ValueError) as e:
        log.warning(f"unreadable {MANIFEST} in {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def has_script(path: str, name: str) -> bool:
    scripts = read_manifest(path).get("scripts") or {}
    return isinstance(scripts, dict) and name in scripts


def _subdirectories(path: str) -> List[str]:
    try:
        names = sorted(os.listdir(path))
    except OSError:
        return []
    return [
        os.path.join(path, name)
        for name in names
        if not name.startswith(".")
        and name not in METADATA_DIRS
        and name != "node_modules"
        and os.path.isdir(os.path.join(path, name))
    ]


def _static_output(path: str) -> str | None:
    for name in STATIC_OUTPUT_DIRS:
        candidate = os.path.join(path, name)
        if os.path.isfile(os.path.join(candidate, "index.html")):
            return candidate
    return None


def _server_output(path: str) -> str | None:
    candidate = os.path.join(path, SERVER_OUTPUT_DIR)
    if os.path.isdir(candidate):
        return path
    return None


def classify(path: str) -> Framework:
    """Guess the framework of a project directory.

    Evidence in priority order: manifest dependencies, config files, pre-built
    output directories, build script contents.

    Args:
        path (str): project directory containing the manifest.

    Returns:
        Framework: detected framework, ``vite`` when nothing matched.
    """
    manifest = read_manifest(path)
    dependencies = {}
    for key in ("dependencies", "devDependencies"):
        if isinstance(manifest.get(key), dict):
            dependencies.update(manifest[key])
    for name, framework in DEPENDENCY_HINTS:
        if name in dependencies:
            return framework
    for name, framework in CONFIG_HINTS:
        if os.path.exists(os.path.join(path, name)):
            return framework
    for name, framework in OUTPUT_HINTS:
        if os.path.isdir(os.path.join(path, name)):
            return framework
    scripts = manifest.get("scripts") if isinstance(manifest.get("scripts"), dict) else {}
    build_script = str(scripts.get("build", ""))
    for needle, framework in SCRIPT_HINTS:
        if needle in build_script:
            return framework
    log.warning(f"no framework evidence in {path}, guessing {Framework.vite.value}")
    return Framework.vite


def locate_project(root: str) -> ProjectInfo:
    """Find the project inside an extraction root.

    Search order: manifest at the root, manifest one level down, static output
    at the root or one level down, server output at the root or one level down.
    A manifest always wins over pre-built output.

    Args:
        root (str): extraction root.

    Raises:
        ProjectNotFound: nothing buildable or servable was found.

    Returns:
        ProjectInfo: kind, path and framework.
    """
    if os.path.isfile(os.path.join(root, MANIFEST)):
        return ProjectInfo(kind=ProjectKind.project, path=root, framework=classify(root))
    subdirectories = _subdirectories(root)
    for path in subdirectories:
        if os.path.isfile(os.path.join(path, MANIFEST)):
            return ProjectInfo(kind=ProjectKind.project, path=path, framework=classify(path))
    for path in [root, *subdirectories]:
        if static_dir := _static_output(path):
            return ProjectInfo(kind=ProjectKind.static, path=static_dir, framework=Framework.static)
    if os.path.isfile(os.path.join(root, "index.html")):
        return ProjectInfo(kind=ProjectKind.static, path=root, framework=Framework.static)
    for path in [root, *subdirectories]:
        if server_dir := _server_output(path):
            return ProjectInfo(kind=ProjectKind.server, path=server_dir, framework=Framework.nextjs)
    raise ProjectNotFound(
        "Could not find a package.json, a build output directory "
        f"({', '.join(STATIC_OUTPUT_DIRS + [SERVER_OUTPUT_DIR])}) or an index.html "
        "in the uploaded archive"
    )


def local_binary(path: str, name: str) -> str | None:
    binary = os.path.join(path, LOCAL_BIN, name)
    if os.path.isfile(binary) and os.access(binary, os.X_OK):
        return binary
    return None


def validate_framework(path: str, framework: Framework) -> Framework:
    """Re-check a detected framework against concrete build artefacts.

    Args:
        path (str): project directory after the build.
        framework (Framework): framework detected before the build.

    Returns:
        Framework: the corrected framework.
    """
    has_server_output = os.path.isfile(os.path.join(path, SERVER_OUTPUT_DIR, "BUILD_ID"))
    corrected = framework
    if has_server_output and framework != Framework.nextjs:
        corrected = Framework.nextjs
    elif framework == Framework.nextjs and not os.path.isdir(os.path.join(path, SERVER_OUTPUT_DIR)):
        has_export = os.path.isfile(os.path.join(path, "out", "index.html"))
        if not has_export and os.path.isfile(os.path.join(path, "dist", "index.html")):
            corrected = Framework.vite
    if corrected != framework:
        log.warning(
            f"framework of {path} corrected from {framework.value} to {corrected.value}"
        )
    return corrected


def _angular_output(path: str) -> str | None:
    dist = os.path.join(path, "dist")
    for candidate in [dist, *_subdirectories(dist)]:
        for directory in (candidate, os.path.join(candidate, "browser")):
            if os.path.isfile(os.path.join(directory, "index.html")):
                return directory
    return None


def resolve_output(info: ProjectInfo) -> ServeTarget:
    """Decide what to serve for a located (and possibly built) project."""
    if info.kind == ProjectKind.static:
        return ServeTarget(path=info.path, shape=OutputShape.static, static_dir=info.path)
    path = info.path
    export_dir = os.path.join(path, "out")
    if not os.path.isfile(os.path.join(export_dir, "index.html")):
        export_dir = None
    if info.framework == Framework.nextjs:
        if os.path.isdir(os.path.join(path, SERVER_OUTPUT_DIR)):
            return ServeTarget(path=path, shape=OutputShape.server, static_dir=export_dir)
        if export_dir:
            return ServeTarget(path=export_dir, shape=OutputShape.static, static_dir=export_dir)
    if info.framework == Framework.angular:
        if output := _angular_output(path):
            return ServeTarget(path=output, shape=OutputShape.static, static_dir=output)
    if info.framework == Framework.vite:
        return ServeTarget(path=path, shape=OutputShape.spa, static_dir=_static_output(path))
    if static_dir := _static_output(path):
        return ServeTarget(path=static_dir, shape=OutputShape.static, static_dir=static_dir)
    if os.path.isfile(os.path.join(path, "index.html")):
        return ServeTarget(path=path, shape=OutputShape.static, static_dir=path)
    return ServeTarget(path=path, shape=OutputShape.spa, static_dir=None)
