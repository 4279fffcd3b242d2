from typing import List

import os
import re

import structlog

from launchpad import toolchain, detector
from launchpad.toolchain import Decision, Outcome, Step
from launchpad.constants import FALLBACK_MANAGER, FRAMEWORK_CLI, Framework
from launchpad.exceptions import BuildFailed


log = structlog.get_logger()

# "sh: 1: vite: not found", "vite: command not found", "command not found: vite"
MISSING_COMMAND = re.compile(
    r"(?:^|\s)([\w@./-]+): (?:command )?not found(?!:)|command not found: ([\w@./-]+)",
    re.MULTILINE,
)


def missing_commands(output: str) -> List[str]:
    names = []
    for match in MISSING_COMMAND.finditer(output):
        name = match.group(1) or match.group(2)
        names.append(os.path.basename(name))
    return names


def direct_step(path: str, framework: Framework) -> Step | None:
    """Invoke the framework's CLI from node_modules/.bin, bypassing the manager."""
    cli = FRAMEWORK_CLI.get(framework)
    if cli is None:
        return None
    binary = detector.local_binary(path, cli)
    if binary is None:
        return None
    return Step(tool=binary, args=["build"], cwd=path, direct=True)


def build_steps(path: str, framework: Framework) -> List[Step]:
    steps = []
    if detector.has_script(path, "build"):
        for manager in toolchain.package_managers(path):
            steps.append(
                Step(
                    tool=manager,
                    args=["run", "build"],
                    cwd=path,
                    fallback=manager == FALLBACK_MANAGER,
                )
            )
    if step := direct_step(path, framework):
        steps.append(step)
    return steps


def classify(step: Step, returncode: int | None, output: str) -> Outcome:
    if returncode == 0:
        status = "ok"
    elif returncode is None:
        status = "missing"
    else:
        missing = missing_commands(output)
        if os.path.basename(step.tool) in missing:
            status = "missing"
        elif returncode == 127 or missing:
            status = "tool_missing"
        else:
            status = "failed"
    return Outcome(status=status, step=step, returncode=returncode, output=output)


class BuildPolicy:
    """Failure handling, most specific first.

    A missing manager advances, a missing build binary gets one direct
    invocation when the binary is on disk, anything else is recorded as the
    last build error.
    """

    def __init__(self, path: str, framework: Framework):
        self.path = path
        self.framework = framework
        self.recovered = False
        self.last_error: str | None = None

    def decide(self, outcome: Outcome) -> Decision:
        step = outcome.step
        name = step.describe()
        if outcome.status == "ok":
            return Decision.accept()
        if outcome.status == "missing":
            log.info(f"[build] {step.tool} not available, trying next command")
            return Decision.advance()
        self.last_error = (
            f"Build failed with {name} (exit code {outcome.returncode}): "
            f"{toolchain.tail(outcome.output)}"
        )
        if outcome.status == "tool_missing" and not step.direct and not self.recovered:
            recovery = direct_step(self.path, self.framework)
            if recovery is not None:
                self.recovered = True
                log.info(f"[build] build binary missing under {name}, trying {recovery.describe()}")
                return Decision.substitute(recovery)
        log.warning(f"[build] {name} failed (code {outcome.returncode})")
        return Decision.advance()


async def attempt(step: Step) -> Outcome:
    executable = toolchain.resolve_tool(step.tool)
    if executable is None:
        return Outcome(status="missing", step=step)
    env = toolchain.with_tool(toolchain.clean_env(step.cwd), executable)
    resolved = step.model_copy(update={"tool": executable})
    log.info(f"[build] running {resolved.describe()} in {step.cwd} (PATH={env['PATH']})")
    returncode, output = await toolchain.run(resolved, env)
    log.info(f"[build] {executable} exited with code {returncode}")
    return classify(step, returncode, output)


async def build_project(path: str, framework: Framework) -> str:
    """Build a project with its framework's toolchain.

    Args:
        path (str): project directory with installed dependencies.
        framework (Framework): detected framework.

    Raises:
        BuildFailed: every candidate failed; carries the most specific error.

    Returns:
        str: combined build output.
    """
    steps = build_steps(path, framework)
    if not steps:
        log.info(f"[build] {path} has no build script, skipping build")
        return "No build script found, serving sources as-is\n"
    policy = BuildPolicy(path, framework)
    log.info(f"[build] candidates: {', '.join(step.describe() for step in steps)}")
    outcome = await toolchain.interpret(steps, attempt, policy.decide)
    if outcome is not None:
        return outcome.output
    if policy.last_error:
        raise BuildFailed(policy.last_error)
    tried = ", ".join(step.describe() for step in steps)
    raise BuildFailed(f"Build command failed - no package manager found (tried: {tried})")
