"""
MarketRelay Base Extractor
Abstract base class for listing extractors.
"""

import random
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from database import Listing
from scrapers.parsing import parse_age_to_minutes

logger = logging.getLogger(__name__)

LISTING_PAGE_TIMEOUT_MS = 30000


class BaseExtractor(ABC):
    """Reads listing snapshots from a live page. Results may be empty or partial."""

    def __init__(self, platform: str):
        """
        Initialize the extractor.

        Args:
            platform: Platform identifier (e.g., 'facebook')
        """
        self.platform = platform

    @abstractmethod
    async def extract_listings(self, page, count: int) -> List[Listing]:
        """
        Read up to count listings from the current page.

        Args:
            page: Live Playwright page
            count: Number of listings wanted

        Returns:
            List of Listing objects, possibly empty

        Raises:
            ExtractionFailure: if the page produced nothing usable
        """
        pass

    async def listing_age_minutes(self, context, url: str,
                                  timeout_ms: int = LISTING_PAGE_TIMEOUT_MS) -> Optional[int]:
        """
        Open a listing in its own tab and read its age.

        Returns:
            Age in minutes, or None if it can't be determined
        """
        page = None
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            await page.wait_for_timeout(random.randint(500, 1000))
            abbr = await page.query_selector("abbr[aria-label]")
            if abbr is None:
                return None
            label = await abbr.get_attribute("aria-label")
            return parse_age_to_minutes(label)
        except Exception as e:
            logger.debug(f"Could not read listing age for {url}: {e}")
            return None
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception as e:
                    logger.debug(f"Error closing listing tab: {e}")
