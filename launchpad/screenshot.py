"""Best-effort thumbnails of running previews.

Nothing in here may fail a deployment: every error ends as "no screenshot".
"""

from typing import Set

import os
import asyncio

import httpx
import structlog
from playwright.async_api import async_playwright

from launchpad import registry
from launchpad.settings import (
    SCREENSHOTS_DIR,
    SCREENSHOT_DELAY,
    SCREENSHOT_PROBE_TIMEOUT,
)


log = structlog.get_logger()

VIEWPORT = {"width": 1280, "height": 800}
NAVIGATION_TIMEOUT = 30000
SETTLE_MS = 1000
PROBE_PATHS = ["/", "/index.html"]

WAIT_FOR_IMAGES = """
() => Promise.all(
    Array.from(document.images)
        .filter((image) => !image.complete)
        .map((image) => new Promise((resolve) => {
            image.onload = image.onerror = resolve;
        }))
)
"""

# background tasks must be referenced until they finish
_tasks: Set[asyncio.Task] = set()


def screenshot_path(id: str) -> str:
    return os.path.join(SCREENSHOTS_DIR, f"{id}.png")


async def probe(port: int, timeout: float = SCREENSHOT_PROBE_TIMEOUT) -> bool:
    """True once the preview answers one of the probe paths successfully."""
    async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
        for path in PROBE_PATHS:
            try:
                response = await client.get(f"http://127.0.0.1:{port}{path}")
            except httpx.HTTPError as e:
                log.info(f"[screenshot] probe of {path} on port {port} failed: {e}")
                continue
            if response.is_success:
                return True
            log.info(f"[screenshot] probe of {path} on port {port} returned {response.status_code}")
    return False


async def render(url: str, output: str):
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(args=["--no-sandbox"])
        try:
            page = await browser.new_page(viewport=VIEWPORT)
            await page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT)
            await page.evaluate("() => document.fonts.ready.then(() => true)")
            await page.evaluate(WAIT_FOR_IMAGES)
            await page.add_style_tag(content="html, body { background-color: #ffffff; }")
            await page.evaluate("window.scrollTo(0, 0)")
            await page.wait_for_timeout(SETTLE_MS)
            await page.screenshot(path=output, full_page=False)
        finally:
            await browser.close()


async def capture(id: str, port: int, delay: float = SCREENSHOT_DELAY) -> str | None:
    """Screenshot a running preview.

    Args:
        id (str): deployment id.
        port (int): preview server port.
        delay (float): seconds to let the server settle first.

    Returns:
        str | None: PNG path, None when no screenshot was produced.
    """
    try:
        if delay:
            await asyncio.sleep(delay)
        if not await probe(port):
            log.warning(f"[screenshot] preview {id} on port {port} never answered, capturing anyway")
        os.makedirs(SCREENSHOTS_DIR, exist_ok=True)
        output = screenshot_path(id)
        await render(f"http://127.0.0.1:{port}/", output)
        await registry.set_screenshot(id, output)
        log.info(f"[screenshot] saved {output}")
        return output
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.warning(f"[screenshot] capture of {id} failed: {e}")
        return None


def schedule(id: str, port: int, delay: float = SCREENSHOT_DELAY) -> asyncio.Task:
    task = asyncio.create_task(capture(id, port, delay))
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return task
