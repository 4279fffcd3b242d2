"""Subdomain reverse proxy.

Runs as its own process in front of the control plane and every preview
server. Routing is read from the registry on every request.
"""

from typing import List, Tuple

import html
import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketState
from tortoise.contrib.fastapi import RegisterTortoise
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from launchpad import registry
from launchpad.settings import (
    DEPLOYMENT_DOMAIN,
    CONTROL_PLANE_URL,
    PROXY_HOST,
    PROXY_PORT,
    TORTOISE_ORM,
)


log = structlog.get_logger()

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
WEBSOCKET_SKIP = HOP_BY_HOP | {"host", "content-length", "user-agent"}
METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def extract_subdomain(host: str | None, domain: str) -> str | None:
    """Subdomain label of ``host`` under ``domain``.

    Args:
        host (str | None): Host header value, port allowed.
        domain (str): base public domain.

    Returns:
        str | None: the single label left of the domain, None for the bare
        domain, ``www``, nested labels and foreign hosts.
    """
    if not host:
        return None
    hostname = host.strip().lower()
    if hostname.startswith("["):
        return None
    hostname = hostname.split(":", 1)[0].rstrip(".")
    suffix = "." + domain.lower().strip(".")
    if not hostname.endswith(suffix):
        return None
    label = hostname[: -len(suffix)]
    if not label or "." in label or label == "www":
        return None
    return label


def forwarded_headers(request: Request | WebSocket, skip=HOP_BY_HOP) -> List[Tuple[str, str]]:
    headers = [(key, value) for key, value in request.headers.items() if key.lower() not in skip]
    host = request.headers.get("host", "")
    client = request.client.host if request.client else ""
    forwarded_for = request.headers.get("x-forwarded-for")
    forwarded_for = f"{forwarded_for}, {client}" if forwarded_for else client
    scheme = request.url.scheme
    if scheme in ("ws", "wss"):
        scheme = "https" if scheme == "wss" else "http"
    headers = [
        (key, value)
        for key, value in headers
        if key.lower() not in ("x-forwarded-host", "x-forwarded-proto", "x-forwarded-for")
    ]
    headers.extend(
        [
            ("x-forwarded-host", host),
            ("x-forwarded-proto", request.headers.get("x-forwarded-proto", scheme)),
            ("x-forwarded-for", forwarded_for),
        ]
    )
    return headers


def not_found(subdomain: str) -> HTMLResponse:
    name = html.escape(subdomain)
    body = (
        "<!doctype html><html><head><title>Deployment not found</title></head><body>"
        f"<h1>Deployment not found</h1><p>No running deployment for <code>{name}</code>.</p>"
        "</body></html>"
    )
    return HTMLResponse(body, status_code=404)


async def resolve(host: str | None, domain: str, control_plane_url: str) -> Tuple[str | None, str | None]:
    """Upstream base URL for a Host header.

    Returns:
        Tuple[str | None, str | None]: (base url, subdomain); the base url is
        None when the subdomain has no running deployment.
    """
    subdomain = extract_subdomain(host, domain)
    if subdomain is None:
        return control_plane_url.rstrip("/"), None
    deployment = await registry.get_running_by_subdomain(subdomain)
    if deployment is None or deployment.port is None:
        return None, subdomain
    return f"http://127.0.0.1:{deployment.port}", subdomain


def get_client(app: FastAPI) -> httpx.AsyncClient:
    client = getattr(app.state, "client", None)
    if client is None:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=5),
            follow_redirects=False,
            # upstreams are local, proxies from the environment never apply
            trust_env=False,
        )
        app.state.client = client
    return client


def create_app(
    domain: str = DEPLOYMENT_DOMAIN,
    control_plane_url: str = CONTROL_PLANE_URL,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with RegisterTortoise(app, config=TORTOISE_ORM, add_exception_handlers=False):
            yield
            client = getattr(app.state, "client", None)
            if client is not None:
                await client.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=METHODS)
    async def forward(request: Request, path: str):
        host = request.headers.get("host")
        base, subdomain = await resolve(host, domain, control_plane_url)
        if subdomain is None and request.url.path == "/health":
            return JSONResponse({"status": "ok"})
        if base is None:
            log.info(f"[proxy] no running deployment for {subdomain}")
            return not_found(subdomain)
        url = f"{base}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        content = None
        if "content-length" in request.headers or "transfer-encoding" in request.headers:
            content = request.stream()
        client = get_client(request.app)
        upstream_request = client.build_request(
            request.method,
            url,
            headers=forwarded_headers(request),
            content=content,
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            target = subdomain or "control plane"
            log.warning(f"[proxy] {target} upstream {base} failed: {e!r}")
            return JSONResponse(
                {"detail": f"Bad gateway: {target} is unreachable ({type(e).__name__}: {e})"},
                status_code=502,
            )
        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (key, value)
            for key, value in upstream.headers.raw
            if key.decode("latin-1").lower() not in HOP_BY_HOP
        ]
        return response

    @app.websocket("/{path:path}")
    async def forward_websocket(websocket: WebSocket, path: str):
        host = websocket.headers.get("host")
        base, subdomain = await resolve(host, domain, control_plane_url)
        if base is None:
            log.info(f"[proxy] no running deployment for websocket {subdomain}")
            # accepted first so the client sees the close code, not a bare 403
            await websocket.accept()
            await websocket.close(code=1008, reason=f"No running deployment for {subdomain}")
            return
        upstream_url = httpx.URL(base)
        scheme = "wss" if upstream_url.scheme == "https" else "ws"
        default_port = 443 if scheme == "wss" else 80
        # the URI carries the original Host header, the socket goes to the upstream
        url = f"{scheme}://{host or upstream_url.netloc.decode('ascii')}{websocket.url.path}"
        if websocket.url.query:
            url = f"{url}?{websocket.url.query}"
        subprotocols = websocket.scope.get("subprotocols") or None
        try:
            upstream = await connect(
                url,
                host=upstream_url.host,
                port=upstream_url.port or default_port,
                additional_headers=forwarded_headers(websocket, WEBSOCKET_SKIP),
                subprotocols=subprotocols,
                open_timeout=5,
                proxy=None,
            )
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as e:
            log.warning(f"[proxy] websocket upstream {base} for {url} failed: {e!r}")
            await websocket.accept()
            await websocket.close(code=1011, reason="Upstream is unreachable")
            return
        await websocket.accept(subprotocol=upstream.subprotocol)
        await bridge(websocket, upstream)

    return app


async def bridge(websocket: WebSocket, upstream):
    """Pump frames both ways until either side closes."""

    async def downstream_to_upstream():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])

    async def upstream_to_downstream():
        async for message in upstream:
            if isinstance(message, str):
                await websocket.send_text(message)
            else:
                await websocket.send_bytes(message)

    tasks = [
        asyncio.create_task(downstream_to_upstream()),
        asyncio.create_task(upstream_to_downstream()),
    ]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if (error := task.exception()) and not isinstance(error, ConnectionClosed):
                log.info(f"[proxy] websocket bridge ended: {error!r}")
    finally:
        await upstream.close()
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=PROXY_HOST, port=PROXY_PORT)
