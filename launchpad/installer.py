from typing import List

import re

import structlog

from launchpad import toolchain
from launchpad.toolchain import Decision, Outcome, Step
from launchpad.constants import FALLBACK_MANAGER
from launchpad.exceptions import DependencyInstallFailed
from launchpad.settings import INSTALL_RETRY_DELAY


log = structlog.get_logger()

NPM_FETCH_FLAGS = [
    "--fetch-timeout=120000",
    "--fetch-retry-mintimeout=30000",
    "--fetch-retry-maxtimeout=180000",
]
NETWORK_ERROR = re.compile(
    r"ETIMEDOUT|ECONNRESET|ECONNREFUSED|EAI_AGAIN|ENOTFOUND|socket hang up"
    r"|network|timed? ?out|connection",
    re.IGNORECASE,
)
# exit codes of a child killed by SIGKILL / SIGTERM when run through a shell
SIGNAL_EXIT_CODES = {137, 143}


def install_steps(path: str) -> List[Step]:
    steps = []
    for manager in toolchain.package_managers(path):
        args = ["install"]
        if manager == FALLBACK_MANAGER:
            args.extend(NPM_FETCH_FLAGS)
        steps.append(
            Step(
                tool=manager,
                args=args,
                cwd=path,
                fallback=manager == FALLBACK_MANAGER,
            )
        )
    return steps


def classify(step: Step, returncode: int | None, output: str) -> Outcome:
    if returncode == 0:
        status = "ok"
    elif returncode is None or returncode == 127:
        status = "missing"
    elif returncode < 0 or returncode in SIGNAL_EXIT_CODES or NETWORK_ERROR.search(output):
        status = "transient"
    else:
        status = "failed"
    return Outcome(status=status, step=step, returncode=returncode, output=output)


class InstallPolicy:
    """Advance past missing managers, retry the fallback once on network trouble."""

    def __init__(self):
        self.retried = set()
        self.last_error: str | None = None

    def decide(self, outcome: Outcome) -> Decision:
        step = outcome.step
        if outcome.status == "ok":
            return Decision.accept()
        if outcome.status == "missing":
            log.info(f"[install] {step.tool} not available, trying next package manager")
            return Decision.advance()
        self.last_error = (
            f"{step.tool} exited with code {outcome.returncode}: "
            f"{toolchain.tail(outcome.output)}"
        )
        if outcome.status == "transient" and step.fallback and step.key not in self.retried:
            self.retried.add(step.key)
            log.warning(f"[install] {step.tool} hit a network error, retrying once")
            return Decision.retry(INSTALL_RETRY_DELAY)
        log.warning(f"[install] {step.tool} install failed (code {outcome.returncode})")
        return Decision.advance()


async def attempt(step: Step) -> Outcome:
    executable = toolchain.resolve_tool(step.tool)
    if executable is None:
        return Outcome(status="missing", step=step)
    env = toolchain.with_tool(toolchain.clean_env(), executable)
    resolved = step.model_copy(update={"tool": executable})
    log.info(f"[install] running {resolved.describe()} in {step.cwd}")
    returncode, output = await toolchain.run(resolved, env)
    log.info(f"[install] {executable} exited with code {returncode}")
    return classify(step, returncode, output)


async def install_dependencies(path: str) -> str:
    """Install a project's dependencies.

    Args:
        path (str): project directory containing package.json.

    Raises:
        DependencyInstallFailed: every package manager failed or was missing.

    Returns:
        str: combined install output.
    """
    policy = InstallPolicy()
    steps = install_steps(path)
    outcome = await toolchain.interpret(steps, attempt, policy.decide)
    if outcome is not None:
        return outcome.output
    tried = ", ".join(step.tool for step in steps)
    message = f"Installation failed (tried: {tried})"
    if policy.last_error:
        message = f"{message}: {policy.last_error}"
    raise DependencyInstallFailed(message)
