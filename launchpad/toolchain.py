"""Running external Node.js tooling.

Install, build and preview are all expressed as an ordered list of ``Step``
candidates. ``interpret`` tries them in order, hands every ``Outcome`` to a
policy callback and follows the returned ``Decision``.
"""

from typing import Awaitable, Callable, Dict, List, Literal, Tuple

import os
import shutil
import asyncio

import structlog
from pydantic import BaseModel

from launchpad.constants import LOCK_FILES, FALLBACK_MANAGER, LOCAL_BIN
from launchpad.settings import BASE_PATH


log = structlog.get_logger()

COMMON_LOCATIONS = [
    "/usr/bin",
    "/usr/local/bin",
    "/opt/nodejs/bin",
    "/opt/homebrew/bin",
    os.path.expanduser("~/.npm-global/bin"),
    os.path.expanduser("~/.local/share/pnpm"),
    os.path.expanduser("~/.bun/bin"),
    os.path.expanduser("~/.yarn/bin"),
]


class Step(BaseModel):
    """One candidate command."""

    tool: str
    args: List[str] = []
    cwd: str | None = None
    # the generic fallback manager, eligible for the transient-network retry
    fallback: bool = False
    # invokes a framework binary directly, bypassing the package manager
    direct: bool = False

    @property
    def key(self) -> Tuple[str, ...]:
        return (self.tool, *self.args, self.cwd or "")

    def describe(self) -> str:
        return " ".join([os.path.basename(self.tool), *self.args])


class Outcome(BaseModel):
    status: Literal[
        "ok",
        "missing",
        "tool_missing",
        "transient",
        "failed",
        "exited",
        "timeout",
        "static_export",
        "address_in_use",
    ]
    step: Step
    returncode: int | None = None
    output: str = ""
    pid: int | None = None
    port: int | None = None


class Decision(BaseModel):
    action: Literal["accept", "advance", "retry", "substitute"]
    step: Step | None = None
    delay: float = 0

    @classmethod
    def accept(cls) -> "Decision":
        return cls(action="accept")

    @classmethod
    def advance(cls) -> "Decision":
        return cls(action="advance")

    @classmethod
    def retry(cls, delay: float) -> "Decision":
        return cls(action="retry", delay=delay)

    @classmethod
    def substitute(cls, step: Step) -> "Decision":
        return cls(action="substitute", step=step)


def resolve_tool(tool: str) -> str | None:
    """Find an executable for a tool name.

    Absolute paths are checked as-is; names are looked up in common install
    locations first, then on the inherited PATH (or BASE_PATH).

    Args:
        tool (str): tool name or absolute path.

    Returns:
        str | None: executable path, None when not installed.
    """
    if os.path.isabs(tool):
        return tool if os.path.isfile(tool) and os.access(tool, os.X_OK) else None
    for directory in COMMON_LOCATIONS:
        candidate = os.path.join(directory, tool)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return shutil.which(tool, path=os.environ.get("PATH") or BASE_PATH)


def clean_env(project_path: str | None = None) -> Dict[str, str]:
    """Minimal environment for child processes.

    NODE_ENV is deliberately left unset so dev dependencies are installed.
    """
    path = BASE_PATH
    if project_path:
        local_bin = os.path.join(project_path, LOCAL_BIN)
        if os.path.isdir(local_bin):
            path = f"{local_bin}:{path}"
    env = {
        "PATH": path,
        "HOME": os.environ.get("HOME", "/root"),
        "USER": os.environ.get("USER", "root"),
    }
    if prefix := os.environ.get("npm_config_prefix"):
        env["npm_config_prefix"] = prefix
    return env


def with_tool(env: Dict[str, str], executable: str) -> Dict[str, str]:
    """Make sure a resolved tool's siblings (node for npm) are on PATH."""
    directory = os.path.dirname(executable)
    paths = env["PATH"].split(":")
    if directory in paths:
        return env
    return {**env, "PATH": ":".join([*paths, directory])}


def package_managers(path: str) -> List[str]:
    """Package managers to try, ordered by the lock file present.

    Args:
        path (str): project directory.

    Returns:
        List[str]: manager names, always ending with the fallback manager.
    """
    for lock_file, manager in LOCK_FILES:
        if os.path.exists(os.path.join(path, lock_file)):
            if manager == FALLBACK_MANAGER:
                return [FALLBACK_MANAGER, "pnpm"]
            return [manager, FALLBACK_MANAGER]
    return [FALLBACK_MANAGER, "pnpm"]


async def run(step: Step, env: Dict[str, str]) -> Tuple[int | None, str]:
    """Run a step to completion.

    Args:
        step (Step): command, already resolved to an executable.
        env (Dict[str, str]): child environment.

    Returns:
        Tuple[int | None, str]: exit code (None when it could not be spawned)
        and combined stdout/stderr.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            step.tool,
            *step.args,
            cwd=step.cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except (FileNotFoundError, PermissionError) as e:
        return None, str(e)
    stdout, _ = await process.communicate()
    return process.returncode, stdout.decode("utf-8", errors="replace")


def tail(output: str, limit: int = 500) -> str:
    output = output.strip()
    if len(output) <= limit:
        return output
    return "..." + output[-limit:]


async def interpret(
    steps: List[Step],
    attempt: Callable[[Step], Awaitable[Outcome]],
    decide: Callable[[Outcome], Decision],
) -> Outcome | None:
    """Try candidate steps in order until the policy accepts one.

    An identical command is never attempted twice, except through an explicit
    ``retry`` decision.

    Args:
        steps (List[Step]): candidates in priority order.
        attempt (Callable): runs one step and classifies the result.
        decide (Callable): policy mapping an outcome to a decision.

    Returns:
        Outcome | None: the accepted outcome, None when candidates ran out.
    """
    pending = list(steps)
    attempted = set()
    while pending:
        step = pending.pop(0)
        if step.key in attempted:
            continue
        attempted.add(step.key)
        while True:
            outcome = await attempt(step)
            decision = decide(outcome)
            if decision.action != "retry":
                break
            log.info(f"retrying {step.describe()} in {decision.delay}s")
            await asyncio.sleep(decision.delay)
        if decision.action == "accept":
            return outcome
        if decision.action == "substitute" and decision.step is not None:
            pending.insert(0, decision.step)
    return None
