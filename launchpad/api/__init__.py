from fastapi import APIRouter

from launchpad.api import deploy, demo, screenshots


router = APIRouter()


@router.get("/health", description="Health check", tags=["probe"])
async def health():
    return True


router.include_router(
    deploy.router,
    prefix="/deploy",
    tags=["deploy"],
)

router.include_router(
    demo.router,
    prefix="/demo",
    tags=["demo"],
)

router.include_router(
    screenshots.router,
    prefix="/screenshots",
    tags=["screenshots"],
)
