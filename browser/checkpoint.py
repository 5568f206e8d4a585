"""
MarketRelay Checkpoint Handler
Detects the site's anti-automation interstitial and tries to dismiss it.
"""

import enum
import time
import random
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from config import SCREENSHOT_DIR
from browser.human import human_click, human_mouse_move
from browser.health import CHECKPOINT_URL_MARKER
from browser.locator import Intent

logger = logging.getLogger(__name__)


class CheckpointState(enum.Enum):
    NO_CHECKPOINT = "no_checkpoint"
    CHECKPOINT_DETECTED = "checkpoint_detected"
    DISMISS_ATTEMPTED = "dismiss_attempted"
    DISMISSED = "dismissed"
    DISMISS_FAILED = "dismiss_failed"


@dataclass
class CheckpointResult:
    state: CheckpointState
    attempts: int = 0
    screenshots: List[str] = field(default_factory=list)
    detected: bool = False

    @property
    def ok(self) -> bool:
        return self.state in (CheckpointState.NO_CHECKPOINT, CheckpointState.DISMISSED)


class CheckpointHandler:
    """Up to max_attempts dismiss attempts, with a screenshot after each failure."""

    def __init__(
        self,
        screenshot_dir: Path = SCREENSHOT_DIR,
        max_attempts: int = 3,
        settle_ms=(3000, 4000),
        jitter_ms=(500, 2000),
    ):
        self.screenshot_dir = Path(screenshot_dir)
        self.max_attempts = max_attempts
        self.settle_ms = settle_ms
        self.jitter_ms = jitter_ms

    async def detect(self, page, locator) -> bool:
        try:
            if CHECKPOINT_URL_MARKER in (page.url or ""):
                return True
            return await locator.find(Intent.CHECKPOINT_TEXT, timeout_ms=1000) is not None
        except Exception as e:
            logger.debug(f"Checkpoint detection failed: {e}")
            return False

    async def _dismiss_visible(self, locator) -> bool:
        try:
            return await locator.find(Intent.CHECKPOINT_DISMISS, timeout_ms=1000) is not None
        except Exception:
            return False

    async def _screenshot(self, page, attempt: int):
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        path = self.screenshot_dir / f"checkpoint_attempt{attempt}_{int(time.time() * 1000)}.png"
        try:
            await page.screenshot(path=str(path), full_page=True)
            logger.info(f"Saved checkpoint screenshot: {path}")
            return str(path)
        except Exception as e:
            logger.debug(f"Could not save screenshot: {e}")
            return None

    async def handle(self, page, locator) -> CheckpointResult:
        """
        Run the checkpoint state machine once on the page.

        Returns:
            CheckpointResult; result.ok is False only when dismissal failed
        """
        if not await self.detect(page, locator):
            return CheckpointResult(CheckpointState.NO_CHECKPOINT)

        logger.warning("Checkpoint detected")
        result = CheckpointResult(CheckpointState.CHECKPOINT_DETECTED, detected=True)

        button = await locator.find(Intent.CHECKPOINT_DISMISS)
        if button is None:
            # Nothing to dismiss; the page is usable as is
            logger.info("No dismiss control on checkpoint, treating page as healthy")
            result.state = CheckpointState.NO_CHECKPOINT
            return result

        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            result.state = CheckpointState.DISMISS_ATTEMPTED
            logger.info(f"Checkpoint dismiss attempt {attempt}/{self.max_attempts}")
            try:
                await human_mouse_move(page, steps=2)
                await button.hover()
                await page.wait_for_timeout(random.randint(200, 500))
                await human_click(page, button)
                await page.wait_for_timeout(random.randint(*self.settle_ms))

                if not await self._dismiss_visible(locator):
                    logger.info("Checkpoint dismissed")
                    result.state = CheckpointState.DISMISSED
                    return result
                logger.warning(f"Dismiss control still visible after attempt {attempt}")
            except Exception as e:
                logger.warning(f"Checkpoint dismiss attempt {attempt} failed: {e}")

            shot = await self._screenshot(page, attempt)
            if shot:
                result.screenshots.append(shot)

            if attempt < self.max_attempts:
                await page.wait_for_timeout(random.randint(*self.jitter_ms))
                # The control may have been re-rendered
                button = await locator.find(Intent.CHECKPOINT_DISMISS) or button

        logger.error(f"Could not dismiss checkpoint after {self.max_attempts} attempts")
        result.state = CheckpointState.DISMISS_FAILED
        return result
