"""OS process helpers for detached preview servers.

The registry row's pid is the only handle to a preview process; nothing here
keeps in-memory process objects.
"""

from typing import List

import os
import signal
import asyncio

import psutil
import structlog

from launchpad.settings import KILL_GRACE_SECONDS


log = structlog.get_logger()


def is_alive(pid: int) -> bool:
    try:
        process = psutil.Process(pid)
        return process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def pids_on_port(port: int) -> List[int]:
    """Processes with a listening socket on ``port``."""
    pids = set()
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        log.warning("not allowed to list sockets, port lookup skipped")
        return []
    for connection in connections:
        if not connection.laddr or connection.pid is None:
            continue
        if connection.laddr.port == port and connection.status == psutil.CONN_LISTEN:
            pids.add(connection.pid)
    return sorted(pids)


def _signal(pid: int, sig: signal.Signals) -> bool:
    # preview servers run in their own session, the group takes their children along
    try:
        os.killpg(pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        pass
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False


async def _wait_gone(pid: int, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if not is_alive(pid):
            return True
        await asyncio.sleep(0.1)
    return not is_alive(pid)


async def terminate(pid: int, grace: float = KILL_GRACE_SECONDS) -> bool:
    """SIGTERM the process (group), SIGKILL it after ``grace`` seconds.

    Args:
        pid (int): process id, usually a session leader.
        grace (float): seconds between SIGTERM and SIGKILL.

    Returns:
        bool: True when a signal was delivered.
    """
    if not is_alive(pid):
        return False
    if not _signal(pid, signal.SIGTERM):
        return False
    if await _wait_gone(pid, grace):
        return True
    log.info(f"process {pid} ignored SIGTERM, killing")
    _signal(pid, signal.SIGKILL)
    await _wait_gone(pid, grace)
    return True


async def kill_port(port: int, grace: float = KILL_GRACE_SECONDS) -> List[int]:
    pids = pids_on_port(port)
    for pid in pids:
        if pid == os.getpid():
            continue
        log.info(f"killing process {pid} listening on port {port}")
        try:
            psutil.Process(pid).kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            log.warning(f"could not kill {pid} on port {port}: {e}")
    if pids:
        await asyncio.sleep(min(grace, 0.5))
    return pids


async def stop(pid: int | None, port: int | None) -> None:
    """Stop a preview server by pid, falling back to whoever holds its port."""
    signalled = False
    if pid:
        try:
            signalled = await terminate(pid)
        except OSError as e:
            log.warning(f"failed to signal process {pid}: {e}")
    if port and (not signalled or pids_on_port(port)):
        await kill_port(port)
