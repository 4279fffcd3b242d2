from typing import Iterable

import socket

import structlog
from tortoise.transactions import in_transaction

from launchpad import registry
from launchpad.models import Deployment
from launchpad.exceptions import NoPortAvailable
from launchpad.settings import PORT_RANGE_START, PORT_RANGE_END, PORT_PROBE_LIMIT


log = structlog.get_logger()


def is_port_free(port: int) -> bool:
    """Bind and immediately release ``port`` on every interface."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


async def allocate_port(
    start: int = PORT_RANGE_START,
    end: int = PORT_RANGE_END,
    probe_limit: int = PORT_PROBE_LIMIT,
    exclude: Iterable[int] = (),
) -> int:
    """Pick a free preview port.

    The search starts one past the highest port any deployment recorded,
    wraps inside ``[start, end]``, skips ports other rows claim and probes
    each candidate with a real bind.

    Args:
        start (int): first port of the range.
        end (int): last port of the range.
        probe_limit (int): maximum candidates to probe.
        exclude (Iterable[int]): ports to skip, e.g. ones lost to another
            process after they were found free.

    Raises:
        NoPortAvailable: no candidate passed the probe.

    Returns:
        int: a port nobody is bound to.
    """
    ports = await Deployment.filter(port__isnull=False).values_list("port", flat=True)
    claimed = set(ports) | set(exclude)
    seed = max(claimed) + 1 if claimed else start
    if seed < start or seed > end:
        seed = start
    size = end - start + 1
    for offset in range(min(probe_limit, size)):
        port = start + (seed - start + offset) % size
        if port in claimed:
            continue
        if is_port_free(port):
            return port
        log.debug(f"port {port} is in use, skipping")
    raise NoPortAvailable(f"No free port in {start}-{end} after {probe_limit} probes")


async def reserve_port(id: str, **kwargs) -> int:
    """Allocate a port and record it on a processing row in one transaction."""
    async with in_transaction():
        port = await allocate_port(**kwargs)
        await registry.record_progress(id, port=port)
    log.info(f"reserved port {port} for deployment {id}")
    return port
