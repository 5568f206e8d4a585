"""
MarketRelay Facebook Marketplace Extractor
Parses listing cards out of the rendered marketplace page.
"""

import re
import logging
from typing import List, Optional

from bs4 import BeautifulSoup

from .base import BaseExtractor
from .parsing import model_name, parse_age_to_minutes, parse_price
from database import Listing
from errors import ExtractionFailure

logger = logging.getLogger(__name__)

FACEBOOK_BASE_URL = "https://www.facebook.com"
ITEM_LINK_PATTERN = re.compile(r"/marketplace/item/\d+")
DEFAULT_TITLE = "Untitled listing"
MAX_SCROLLS = 3


def normalize_item_url(href: str) -> str:
    """Absolute listing URL without the tracking query string."""
    url = href if href.startswith("http") else f"{FACEBOOK_BASE_URL}{href}"
    return url.split("?")[0]


def _looks_like_price(text: str) -> bool:
    if text.startswith("$") or text.lower() in ("free", "бесплатно"):
        return True
    return bool(re.fullmatch(r"[\d\s.,]+\s?(₽|руб\.?|€|£)", text))


class FacebookExtractor(BaseExtractor):
    """Extractor for Facebook Marketplace result pages."""

    def __init__(self):
        super().__init__("facebook")

    def parse_listings(self, html: str, count: Optional[int] = None) -> List[Listing]:
        """Parse listing cards from page HTML.

        Args:
            html: Page HTML content
            count: Stop after this many cards

        Returns:
            List of Listing objects in page order
        """
        soup = BeautifulSoup(html, "html.parser")
        listings = []
        page_seen_urls = set()  # Dedupe within this page

        for link in soup.find_all("a", href=ITEM_LINK_PATTERN):
            if count is not None and len(listings) >= count:
                break
            try:
                url = normalize_item_url(link.get("href", ""))
                if url in page_seen_urls:
                    continue
                page_seen_urls.add(url)

                # The anchor is the card; older layouts wrap it in a div
                card = link
                if not card.find("span"):
                    card = link.find_parent("div") or link

                texts = []
                for span in card.find_all("span"):
                    text = span.get_text(strip=True)
                    if text and text not in texts:
                        texts.append(text)

                price = next((t for t in texts if _looks_like_price(t)), "")
                rest = [t for t in texts if t != price]

                # City, State format
                location = next((t for t in reversed(rest) if "," in t and len(t) < 50), "")
                candidates = [t for t in rest if t != location]
                title = max(candidates, key=len) if candidates else DEFAULT_TITLE

                img = card.find("img")
                image_url = img.get("src") if img else None

                age_minutes = None
                abbr = card.find("abbr", attrs={"aria-label": True})
                if abbr:
                    age_minutes = parse_age_to_minutes(abbr["aria-label"])

                listings.append(Listing(
                    url=url,
                    title=title[:200],
                    price=price,
                    location=location,
                    image_url=image_url,
                    age_minutes=age_minutes,
                    model_name=model_name(title[:200]),
                ))

            except Exception as e:
                logger.debug(f"Error parsing listing card: {e}")
                continue

        return listings

    async def extract_listings(self, page, count: int) -> List[Listing]:
        html = await page.content()
        if not html:
            raise ExtractionFailure("Page returned no content")

        listings = self.parse_listings(html, count)

        # Scroll to load more
        scrolls = 0
        while len(listings) < count and scrolls < MAX_SCROLLS:
            scrolls += 1
            await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
            await page.wait_for_timeout(1500)
            more = self.parse_listings(await page.content(), count)
            if len(more) <= len(listings):
                break
            listings = more

        priced = sum(1 for item in listings if parse_price(item.price) is not None)
        logger.info(f"Facebook: found {len(listings)} listings ({priced} with a price)")
        return listings
