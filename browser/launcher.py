"""
MarketRelay Browser Launcher
Persistent Playwright context with a stable device fingerprint.
"""

import logging
from pathlib import Path
from typing import Tuple

from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from config import (
    BROWSER_ENGINE,
    BROWSER_DATA_DIR,
    BROWSER_LANGUAGES,
    HEADLESS,
    NAVIGATION_TIMEOUT_MS,
    PROFILE_LOCK_FILES,
    USER_AGENT,
    VIEWPORT,
)

logger = logging.getLogger(__name__)

# Runs before any page script; hides the usual automation tells
FINGERPRINT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined, configurable: true});
Object.defineProperty(navigator, 'plugins', {
  get: () => ({
    length: 3,
    0: {name: 'Chrome PDF Plugin', description: 'Portable Document Format', filename: 'internal-pdf-viewer'},
    1: {name: 'Chrome PDF Viewer', description: '', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai'},
    2: {name: 'Native Client', description: '', filename: 'internal-nacl-plugin'}
  }),
  configurable: true
});
Object.defineProperty(navigator, 'languages', {get: () => %s, configurable: true});
"""


def remove_profile_locks(data_dir: Path) -> int:
    """Delete lock files a crashed browser left in the profile directory."""
    removed = 0
    for name in PROFILE_LOCK_FILES:
        lock_path = data_dir / name
        # SingletonLock is usually a dangling symlink, so exists() is not enough
        if lock_path.exists() or lock_path.is_symlink():
            try:
                lock_path.unlink()
                removed += 1
                logger.info(f"Removed stale lock file: {lock_path}")
            except OSError as e:
                logger.error(f"Could not remove {lock_path}: {e}")
    return removed


class BrowserLauncher:
    """Launches and tears down the persistent browser context."""

    def __init__(self, data_dir: Path = BROWSER_DATA_DIR, headless: bool = HEADLESS,
                 engine: str = BROWSER_ENGINE):
        self.data_dir = Path(data_dir)
        self.headless = headless
        self.engine = engine
        self.playwright = None

    async def launch(self) -> Tuple[object, object]:
        """
        Launch a fresh persistent context.

        Returns:
            (context, page)
        """
        if self.playwright is None:
            self.playwright = await async_playwright().start()

        self.data_dir.mkdir(parents=True, exist_ok=True)
        remove_profile_locks(self.data_dir)

        logger.info(f"Launching {self.engine} (headless={self.headless})...")
        browser_type = getattr(self.playwright, self.engine)

        args = ["--disable-notifications", "--disable-popup-blocking"]
        if self.engine == "chromium":
            args += [
                "--disable-blink-features=AutomationControlled",
                "--disable-dev-shm-usage",
                "--no-sandbox",
            ]

        context = await browser_type.launch_persistent_context(
            str(self.data_dir),
            headless=self.headless,
            viewport=VIEWPORT,
            user_agent=USER_AGENT,
            locale=BROWSER_LANGUAGES[0],
            args=args,
            accept_downloads=True,
            bypass_csp=True,
            ignore_https_errors=True,
            permissions=["geolocation"],
        )
        context.set_default_navigation_timeout(NAVIGATION_TIMEOUT_MS)

        languages = "[" + ", ".join(f"'{lang}'" for lang in BROWSER_LANGUAGES) + "]"
        await context.add_init_script(FINGERPRINT_SCRIPT % languages)

        page = context.pages[0] if context.pages else await context.new_page()

        # Apply stealth to avoid detection
        stealth = Stealth()
        await stealth.apply_stealth_async(page)

        logger.info("Browser launched")
        return context, page

    async def close(self, context):
        """Close a context. Errors are logged and swallowed."""
        if context is None:
            return
        try:
            await context.close()
            logger.info("Browser context closed")
        except Exception as e:
            logger.debug(f"Error closing browser context: {e}")

    async def stop(self):
        if self.playwright is not None:
            try:
                await self.playwright.stop()
            except Exception as e:
                logger.debug(f"Error stopping playwright: {e}")
            self.playwright = None
