# backend/sensei/services/pdf_renderer.py
"""
HTML -> PDF through headless Chromium (Playwright).

Launching is tried across several strategies in order: an explicitly
configured executable, the installed Chrome channel, well-known install
locations for the platform, and finally Playwright's bundled Chromium.
"""
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from sensei.core.config import Settings
from sensei.core.errors import RenderFailure
from sensei.core.logging_config import get_logger

PDF_MEDIA_TYPE = "application/pdf"

BROWSER_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

PDF_OPTIONS = {
    "format": "A4",
    "print_background": True,
    "margin": {"top": "20mm", "right": "20mm", "bottom": "20mm", "left": "20mm"},
}


@dataclass(frozen=True)
class LaunchStrategy:
    name: str
    options: Dict[str, Any] = field(default_factory=dict)


def candidate_browser_paths(
    platform: str = sys.platform,
    env: Optional[Mapping[str, str]] = None,
    exists: Callable[[str], bool] = os.path.exists,
) -> List[str]:
    env = os.environ if env is None else env
    if platform.startswith("win"):
        program_files = env.get("PROGRAMFILES", "C:/Program Files")
        program_files_x86 = env.get("PROGRAMFILES(X86)", "C:/Program Files (x86)")
        candidates = [
            os.path.join(program_files, "Google/Chrome/Application/chrome.exe"),
            os.path.join(program_files_x86, "Google/Chrome/Application/chrome.exe"),
        ]
        local_app_data = env.get("LOCALAPPDATA")
        if local_app_data:
            candidates.append(os.path.join(local_app_data, "Google/Chrome/Application/chrome.exe"))
    elif platform == "darwin":
        candidates = [
            "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
            "/Applications/Chromium.app/Contents/MacOS/Chromium",
        ]
    else:
        candidates = [
            "/usr/bin/google-chrome",
            "/usr/bin/google-chrome-stable",
            "/usr/bin/chromium",
            "/usr/bin/chromium-browser",
        ]
    return [path for path in candidates if exists(path)]


def launch_strategies(
    executable_path: Optional[str],
    platform: str = sys.platform,
    env: Optional[Mapping[str, str]] = None,
    exists: Callable[[str], bool] = os.path.exists,
) -> List[LaunchStrategy]:
    strategies = []
    if executable_path and exists(executable_path):
        strategies.append(LaunchStrategy("configured executable", {"executable_path": executable_path}))
    strategies.append(LaunchStrategy("chrome channel", {"channel": "chrome"}))
    for path in candidate_browser_paths(platform, env, exists):
        if path != executable_path:
            strategies.append(LaunchStrategy(f"installed browser {path}", {"executable_path": path}))
    strategies.append(LaunchStrategy("bundled chromium"))
    return strategies


class PdfRenderer:
    def __init__(self, settings: Settings, logger: Optional[logging.Logger] = None):
        self._executable_path = settings.browser_executable_path()
        self._timeout = settings.PDF_RENDER_TIMEOUT_SECONDS
        self._logger = logger or get_logger("pdf")

    def strategies(self) -> List[LaunchStrategy]:
        return launch_strategies(self._executable_path)

    async def launch(self, chromium):
        failures = []
        for strategy in self.strategies():
            try:
                browser = await chromium.launch(headless=True, args=BROWSER_ARGS, **strategy.options)
            except PlaywrightError as exc:
                self._logger.warning("Browser launch via %s failed: %s", strategy.name, exc)
                failures.append(f"{strategy.name}: {exc}")
                continue
            self._logger.debug("Browser launched via %s", strategy.name)
            return browser
        raise RenderFailure("Unable to launch a headless browser for PDF export; tried " + "; ".join(failures))

    async def _render(self, html: str) -> bytes:
        async with async_playwright() as playwright:
            browser = await self.launch(playwright.chromium)
            try:
                page = await browser.new_page()
                page.set_default_timeout(self._timeout * 1000)
                await page.set_content(html, wait_until="load")
                await page.emulate_media(media="screen")
                return await page.pdf(**PDF_OPTIONS)
            finally:
                await browser.close()

    async def render(self, html: str) -> bytes:
        try:
            return await asyncio.wait_for(self._render(html), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise RenderFailure(f"PDF rendering timed out after {self._timeout:g}s") from exc
        except PlaywrightError as exc:
            raise RenderFailure(f"PDF rendering failed: {exc}") from exc
