import sys
import socket
import asyncio
import subprocess

import httpx
import uvicorn
import pytest
import pytest_asyncio
from starlette.requests import Request
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from launchpad import ports, processes, registry
from launchpad.proxy import create_app, extract_subdomain, forwarded_headers


DOMAIN = "preview.localhost"


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def upstream(tmp_path):
    (tmp_path / "index.html").write_text("<h1>upstream</h1>")
    port = free_port()
    process = subprocess.Popen(
        [sys.executable, "-m", "http.server", str(port), "--bind", "127.0.0.1"],
        cwd=tmp_path,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 10
    while ports.is_port_free(port):
        assert loop.time() < deadline
        await asyncio.sleep(0.1)
    yield port
    await processes.stop(process.pid, port)
    process.wait(timeout=5)


@pytest_asyncio.fixture
async def proxy():
    async def request(host, path="/", control_plane_url="http://127.0.0.1:9"):
        app = create_app(domain=DOMAIN, control_plane_url=control_plane_url)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url=f"http://{host}") as client:
            response = await client.get(path)
        client = getattr(app.state, "client", None)
        if client is not None:
            await client.aclose()
        return response

    return request


class TestExtractSubdomain:
    @pytest.mark.parametrize(
        "host, expected",
        [
            ("my-site.preview.localhost", "my-site"),
            ("My-Site.Preview.Localhost:8080", "my-site"),
            ("preview.localhost", None),
            ("preview.localhost:8080", None),
            ("www.preview.localhost", None),
            ("a.b.preview.localhost", None),
            ("example.com", None),
            ("notpreview.localhost", None),
            ("[::1]:8080", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, host, expected):
        assert extract_subdomain(host, DOMAIN) == expected


class TestForwardedHeaders:
    def test_host_kept_and_hop_by_hop_dropped(self):
        request = Request(
            {
                "type": "http",
                "method": "GET",
                "path": "/",
                "query_string": b"",
                "scheme": "https",
                "server": ("proxy", 443),
                "client": ("10.0.0.5", 1234),
                "headers": [
                    (b"host", b"my-site.preview.localhost"),
                    (b"connection", b"keep-alive"),
                    (b"cookie", b"a=1"),
                ],
            }
        )
        headers = dict(forwarded_headers(request))
        assert headers["host"] == "my-site.preview.localhost"
        assert headers["cookie"] == "a=1"
        assert "connection" not in headers
        assert headers["x-forwarded-host"] == "my-site.preview.localhost"
        assert headers["x-forwarded-proto"] == "https"
        assert headers["x-forwarded-for"] == "10.0.0.5"


class TestForward:
    """Routing decisions of the proxy."""

    @pytest.mark.asyncio
    async def test_unknown_subdomain(self, db, proxy):
        response = await proxy("ghost.preview.localhost")
        assert response.status_code == 404
        assert "ghost" in response.text

    @pytest.mark.asyncio
    async def test_processing_deployment_is_not_routed(self, db, proxy):
        await registry.create_deployment("Site")
        response = await proxy("site.preview.localhost")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_running_deployment(self, db, proxy, upstream):
        deployment = await registry.create_deployment("Site")
        await registry.mark_running(deployment.id, port=upstream, pid=1, build_log="")
        response = await proxy("site.preview.localhost", "/index.html")
        assert response.status_code == 200
        assert "upstream" in response.text

    @pytest.mark.asyncio
    async def test_dead_upstream(self, db, proxy):
        deployment = await registry.create_deployment("Site")
        await registry.mark_running(deployment.id, port=free_port(), pid=1, build_log="")
        response = await proxy("site.preview.localhost")
        assert response.status_code == 502
        assert "site" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_bare_domain_goes_to_control_plane(self, db, proxy, upstream):
        response = await proxy(
            "preview.localhost",
            "/index.html",
            control_plane_url=f"http://127.0.0.1:{upstream}",
        )
        assert response.status_code == 200
        assert "upstream" in response.text

    @pytest.mark.asyncio
    async def test_health(self, db, proxy):
        response = await proxy("preview.localhost", "/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


async def echo(connection):
    async for message in connection:
        if message == "host?":
            await connection.send(connection.request.headers["Host"])
        else:
            await connection.send(message)


@pytest_asyncio.fixture
async def websocket_upstream():
    port = free_port()
    async with serve(echo, "127.0.0.1", port):
        yield port


@pytest_asyncio.fixture
async def proxy_server():
    port = free_port()
    config = uvicorn.Config(
        create_app(domain=DOMAIN),
        host="127.0.0.1",
        port=port,
        lifespan="off",
        log_level="warning",
    )
    server = uvicorn.Server(config)
    task = asyncio.create_task(server.serve())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 10
    while not server.started:
        assert loop.time() < deadline, "proxy did not start"
        await asyncio.sleep(0.05)
    yield port
    server.should_exit = True
    await task


def through_proxy(subdomain, proxy_port, path="/socket"):
    # resolve the deployment host name to the local proxy
    return connect(
        f"ws://{subdomain}.{DOMAIN}:{proxy_port}{path}",
        host="127.0.0.1",
        open_timeout=5,
        proxy=None,
    )


class TestForwardWebsocket:
    """WebSocket upgrades are bridged to the preview server."""

    @pytest.mark.asyncio
    async def test_frames_round_trip(self, db, proxy_server, websocket_upstream):
        deployment = await registry.create_deployment("Site")
        await registry.mark_running(deployment.id, port=websocket_upstream, pid=1, build_log="")
        async with through_proxy("site", proxy_server) as websocket:
            await websocket.send("hello")
            assert await websocket.recv() == "hello"
            await websocket.send(b"\x00\x01\x02")
            assert await websocket.recv() == b"\x00\x01\x02"

    @pytest.mark.asyncio
    async def test_host_is_preserved(self, db, proxy_server, websocket_upstream):
        deployment = await registry.create_deployment("Site")
        await registry.mark_running(deployment.id, port=websocket_upstream, pid=1, build_log="")
        async with through_proxy("site", proxy_server) as websocket:
            await websocket.send("host?")
            assert await websocket.recv() == f"site.{DOMAIN}:{proxy_server}"

    @pytest.mark.asyncio
    async def test_unknown_subdomain(self, db, proxy_server):
        async with through_proxy("ghost", proxy_server) as websocket:
            with pytest.raises(ConnectionClosed) as error:
                await websocket.recv()
        assert error.value.rcvd.code == 1008
        assert "ghost" in error.value.rcvd.reason

    @pytest.mark.asyncio
    async def test_dead_upstream(self, db, proxy_server):
        deployment = await registry.create_deployment("Site")
        await registry.mark_running(deployment.id, port=free_port(), pid=1, build_log="")
        async with through_proxy("site", proxy_server) as websocket:
            with pytest.raises(ConnectionClosed) as error:
                await websocket.recv()
        assert error.value.rcvd.code == 1011
