"""
MarketRelay Session Health Monitor
Liveness and error-banner probes. Neither probe ever raises.
"""

import asyncio
import logging

from config import LIVENESS_TIMEOUT_SECONDS
from browser.locator import Intent

logger = logging.getLogger(__name__)

CHECKPOINT_URL_MARKER = "/checkpoint/"


class HealthMonitor:
    """Best-effort probes against the live page."""

    def __init__(self, timeout_seconds: float = LIVENESS_TIMEOUT_SECONDS,
                 banner_timeout_ms: int = 1000):
        self.timeout_seconds = timeout_seconds
        self.banner_timeout_ms = banner_timeout_ms

    async def is_session_dead(self, page) -> bool:
        """Read the document title; any failure or timeout means dead."""
        if page is None:
            return True
        try:
            await asyncio.wait_for(page.title(), timeout=self.timeout_seconds)
            return False
        except Exception as e:
            logger.warning(f"Session liveness check failed: {e!r}")
            return True

    async def has_blocking_error(self, page, locator) -> bool:
        """True when the page shows the error banner or sits on a checkpoint URL."""
        try:
            if CHECKPOINT_URL_MARKER in (page.url or ""):
                logger.warning(f"Checkpoint URL detected: {page.url}")
                return True
            banner = await locator.find(Intent.ERROR_BANNER, timeout_ms=self.banner_timeout_ms)
            if banner is not None:
                logger.warning("Error banner detected on page")
                return True
        except Exception as e:
            logger.debug(f"Blocking error probe failed, assuming healthy: {e}")
        return False
