import socket

import pytest

from launchpad import ports, registry
from launchpad.exceptions import NoPortAvailable


START = 47100
END = 47199


def listen(port):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", port))
    sock.listen()
    return sock


class TestIsPortFree:
    def test_bound_port_is_not_free(self):
        sock = listen(0)
        try:
            assert not ports.is_port_free(sock.getsockname()[1])
        finally:
            sock.close()


class TestAllocatePort:
    """Registry seed plus a live bind check."""

    @pytest.mark.asyncio
    async def test_empty_registry_starts_at_range(self, db):
        port = await ports.allocate_port(start=START, end=END)
        assert START <= port <= END
        assert ports.is_port_free(port)

    @pytest.mark.asyncio
    async def test_seed_is_past_highest_recorded_port(self, db):
        deployment = await registry.create_deployment("Site")
        await registry.record_progress(deployment.id, port=START + 10)
        port = await ports.allocate_port(start=START, end=END)
        assert port > START + 10

    @pytest.mark.asyncio
    async def test_skips_ports_in_use(self, db):
        sock = listen(START)
        try:
            port = await ports.allocate_port(start=START, end=END)
            assert port != START
            # the returned port really is bindable
            check = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            check.bind(("0.0.0.0", port))
            check.close()
        finally:
            sock.close()

    @pytest.mark.asyncio
    async def test_wraps_into_range(self, db):
        deployment = await registry.create_deployment("Site")
        await registry.record_progress(deployment.id, port=END)
        port = await ports.allocate_port(start=START, end=END)
        assert START <= port < END

    @pytest.mark.asyncio
    async def test_exhausted(self, db):
        sock = listen(START)
        try:
            with pytest.raises(NoPortAvailable):
                await ports.allocate_port(start=START, end=START)
        finally:
            sock.close()


class TestReservePort:
    @pytest.mark.asyncio
    async def test_records_port_on_row(self, db):
        first = await registry.create_deployment("One")
        second = await registry.create_deployment("Two")
        port_one = await ports.reserve_port(first.id, start=START, end=END)
        port_two = await ports.reserve_port(second.id, start=START, end=END)
        assert port_one != port_two
        row = await registry.get_deployment(first.id)
        assert row.port == port_one

    @pytest.mark.asyncio
    async def test_lost_port_is_not_reserved_again(self, db):
        deployment = await registry.create_deployment("Site")
        port = await ports.reserve_port(deployment.id, start=START, end=START + 1, exclude=[START])
        assert port == START + 1
