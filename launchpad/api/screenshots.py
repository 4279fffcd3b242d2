import os
import re

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from launchpad.settings import SCREENSHOTS_DIR


router = APIRouter()

SCREENSHOT_NAME = re.compile(r"^[a-f0-9-]{36}\.png$", re.IGNORECASE)


@router.get(
    "/{name}",
    description="Screenshot of a deployment, named <id>.png",
)
async def read(name: str):
    if not SCREENSHOT_NAME.match(name):
        raise HTTPException(status_code=400, detail="Invalid screenshot id")
    path = os.path.join(SCREENSHOTS_DIR, name)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Screenshot not found")
    return FileResponse(
        path,
        media_type="image/png",
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
