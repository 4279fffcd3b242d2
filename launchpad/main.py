"""Control plane entry point."""

import os
import asyncio

from contextlib import asynccontextmanager

import structlog
from aerich import Command
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from tortoise.contrib.fastapi import RegisterTortoise

from launchpad import agent, sweeper
from launchpad.api import router
from launchpad.exceptions import LaunchpadError
from launchpad.settings import (
    APP_NAME,
    TORTOISE_ORM,
    DEBUG,
    DEPLOYMENTS_DIR,
    UPLOADS_DIR,
    SCREENSHOTS_DIR,
    SWEEP_INTERVAL,
    CONTROL_PLANE_PORT,
)


log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    for path in (DEPLOYMENTS_DIR, UPLOADS_DIR, SCREENSHOTS_DIR):
        os.makedirs(path, exist_ok=True)
    command = Command(
        tortoise_config=TORTOISE_ORM,
        app=APP_NAME,
        location="./migrations",
    )
    await command.init()
    await command.upgrade(run_in_transaction=True)
    async with RegisterTortoise(
        app,
        config=TORTOISE_ORM,
        add_exception_handlers=False,
    ):
        await agent.reconcile()
        task = None
        if not DEBUG and SWEEP_INTERVAL > 0:
            task = asyncio.create_task(sweeper.monitor())
        yield
        if task is not None:
            task.cancel()


app = FastAPI(lifespan=lifespan)
app.include_router(router)
if DEBUG:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(LaunchpadError)
async def launchpad_error_handler(request: Request, exc: LaunchpadError):
    log.info(f"{request.method} {request.url.path}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, port=CONTROL_PLANE_PORT)
