"""Preview process manager.

Preview servers are spawned in their own session with output going to the
deployment's ``preview.log``, so they keep running when the control plane
restarts. Readiness is decided by tailing that log.
"""

from typing import List

import os
import sys
import asyncio
import subprocess

import structlog
from pydantic import BaseModel

from launchpad import toolchain, processes
from launchpad.toolchain import Decision, Outcome, Step
from launchpad.readiness import ReadinessDetector, detector_for
from launchpad.detector import ServeTarget
from launchpad.constants import Framework, OutputShape
from launchpad.exceptions import PortInUse, PreviewStartFailed
from launchpad.settings import PREVIEW_READY_TIMEOUT


log = structlog.get_logger()


class PreviewProcess(BaseModel):
    pid: int
    port: int
    output: str


def static_step(directory: str, port: int) -> Step:
    """Plain static file server for ``directory``."""
    if toolchain.resolve_tool("serve"):
        return Step(tool="serve", args=["-s", directory, "-l", str(port)], cwd=directory)
    return python_step(directory, port)


def python_step(directory: str, port: int) -> Step:
    return Step(
        tool=sys.executable,
        args=[
            "-u",
            "-m",
            "http.server",
            str(port),
            "--bind",
            "127.0.0.1",
            "--directory",
            directory,
        ],
        cwd=directory,
    )


def serve_steps(target: ServeTarget, port: int) -> List[Step]:
    """Serve candidates for an output shape, in priority order."""
    if target.shape == OutputShape.server:
        return [Step(tool="npx", args=["next", "start", "-p", str(port)], cwd=target.path)]
    if target.shape == OutputShape.spa:
        return [
            Step(
                tool="npx",
                args=["vite", "preview", "--port", str(port), "--host"],
                cwd=target.path,
            ),
            Step(
                tool="npm",
                args=["run", "preview", "--", "--port", str(port)],
                cwd=target.path,
            ),
            Step(
                tool="pnpm",
                args=["run", "preview", "--", "--port", str(port)],
                cwd=target.path,
            ),
        ]
    steps = []
    if toolchain.resolve_tool("serve"):
        steps.append(static_step(target.path, port))
    steps.append(python_step(target.path, port))
    return steps


async def wait_ready(
    process: subprocess.Popen,
    log_path: str,
    offset: int,
    detector: ReadinessDetector,
    timeout: float,
) -> str:
    """Tail ``log_path`` from ``offset`` until the detector decides.

    Returns:
        str: ``ready``, a detector failure status, ``exited`` or ``timeout``.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    pending = b""
    with open(log_path, "rb") as file:
        file.seek(offset)
        while True:
            exited = process.poll() is not None
            pending += file.read()
            *lines, pending = pending.split(b"\n")
            if exited and pending:
                lines.append(pending)
                pending = b""
            for line in lines:
                status = detector.feed(line.decode("utf-8", errors="replace"))
                if status == "ready" and process.poll() is not None:
                    return "exited"
                if status:
                    return status
            if exited:
                return "exited"
            if loop.time() >= deadline:
                return "timeout"
            await asyncio.sleep(0.1)


class PreviewPolicy:
    """Accept the first ready server; fall back to static serving once."""

    def __init__(self, target: ServeTarget, port: int):
        self.target = target
        self.port = port
        self.substituted = False
        self.last_error: str | None = None
        self.port_in_use = False

    def decide(self, outcome: Outcome) -> Decision:
        step = outcome.step
        if outcome.status == "ok":
            return Decision.accept()
        if outcome.status == "missing":
            log.info(f"[preview] {step.tool} not available, trying next command")
            return Decision.advance()
        self.last_error = (
            f"{step.describe()} {outcome.status}: {toolchain.tail(outcome.output)}"
        )
        if outcome.status == "address_in_use":
            # every other candidate would bind the same port
            self.port_in_use = True
            log.warning(f"[preview] port {self.port} is already in use")
            return Decision.advance()
        static_dir = self.target.static_dir
        if (
            outcome.status in ("exited", "static_export")
            and not self.substituted
            and static_dir
            and os.path.isfile(os.path.join(static_dir, "index.html"))
        ):
            self.substituted = True
            recovery = static_step(static_dir, self.port)
            log.info(
                f"[preview] {step.describe()} {outcome.status}, "
                f"serving {static_dir} with {recovery.describe()}"
            )
            return Decision.substitute(recovery)
        log.warning(f"[preview] {step.describe()} {outcome.status}")
        return Decision.advance()


async def attempt(
    step: Step,
    port: int,
    framework: Framework,
    log_path: str,
    timeout: float,
) -> Outcome:
    executable = toolchain.resolve_tool(step.tool)
    if executable is None:
        return Outcome(status="missing", step=step)
    env = toolchain.with_tool(toolchain.clean_env(step.cwd), executable)
    env["PORT"] = str(port)
    with open(log_path, "ab") as file:
        file.write(f"$ {step.describe()}\n".encode())
        file.flush()
        offset = file.tell()
        try:
            process = subprocess.Popen(
                [executable, *step.args],
                cwd=step.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            log.warning(f"[preview] could not spawn {step.describe()}: {e}")
            return Outcome(status="missing", step=step, output=str(e))
    log.info(f"[preview] started {step.describe()} (pid {process.pid}) in {step.cwd}")
    detector = detector_for(framework)
    status = await wait_ready(process, log_path, offset, detector, timeout)
    if status == "ready":
        return Outcome(
            status="ok",
            step=step,
            pid=process.pid,
            port=detector.bound_port(port),
            output=detector.output,
        )
    await processes.terminate(process.pid)
    process.poll()
    return Outcome(
        status=status,
        step=step,
        returncode=process.returncode,
        output=detector.output,
        pid=process.pid,
    )


async def start_preview(
    target: ServeTarget,
    port: int,
    framework: Framework,
    log_path: str,
    timeout: float = PREVIEW_READY_TIMEOUT,
) -> PreviewProcess:
    """Start a long-running preview server.

    Args:
        target (ServeTarget): directory and output shape to serve.
        port (int): requested port.
        framework (Framework): selects the readiness detector.
        log_path (str): file receiving the server's output.
        timeout (float): readiness wait per candidate, in seconds.

    Raises:
        PortInUse: a candidate found ``port`` already bound.
        PreviewStartFailed: no candidate became ready.

    Returns:
        PreviewProcess: pid, actually bound port and startup output.
    """
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    steps = serve_steps(target, port)
    policy = PreviewPolicy(target, port)

    async def run(step: Step) -> Outcome:
        return await attempt(step, port, framework, log_path, timeout)

    log.info(f"[preview] candidates: {', '.join(step.describe() for step in steps)}")
    outcome = await toolchain.interpret(steps, run, policy.decide)
    if outcome is None:
        tried = ", ".join(step.describe() for step in steps)
        message = f"Could not start preview server (tried: {tried})"
        if policy.last_error:
            message = f"{message}: {policy.last_error}"
        if policy.port_in_use:
            raise PortInUse(message, port)
        raise PreviewStartFailed(message)
    if outcome.port != port:
        log.info(f"[preview] server bound port {outcome.port} instead of {port}")
    return PreviewProcess(pid=outcome.pid, port=outcome.port, output=outcome.output)
