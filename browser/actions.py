"""
MarketRelay Filter Actions
Plain async calls that apply search state to the page. Used by the HTTP
handlers and by the recovery path alike.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from config import MARKETPLACE_URL, NAVIGATION_TIMEOUT_MS
from browser.human import human_click, random_delay, type_text
from browser.locator import Intent

logger = logging.getLogger(__name__)

# Newest first, listed within the last day
LAST_24_HOURS_PARAMS = {
    "sortBy": "creation_time_descend",
    "daysSinceListed": "1",
}

# Menu path used when the site drops the URL parameters
LAST_24_HOURS_CLICKS = [
    Intent.SORT_MENU,
    Intent.SORT_NEWEST,
    Intent.DATE_LISTED_MENU,
    Intent.LAST_24_HOURS,
]


@dataclass
class LocationParams:
    """A location filter request. The coordinates drive the browser geolocation."""
    city: str
    radius: int
    latitude: float
    longitude: float


def with_last_24_hours(url: str) -> str:
    """Return url with the last-24-hours query parameters set."""
    parts = urlsplit(url)
    params = dict(parse_qsl(parts.query))
    params.update(LAST_24_HOURS_PARAMS)
    return urlunsplit(parts._replace(query=urlencode(params)))


def has_last_24_hours(url: str) -> bool:
    params = dict(parse_qsl(urlsplit(url).query))
    return all(params.get(k) == v for k, v in LAST_24_HOURS_PARAMS.items())


class FilterActions:
    """Applies search, category, location, price and date filters to a page."""

    def __init__(self, base_url: str = MARKETPLACE_URL, timeout_ms: int = NAVIGATION_TIMEOUT_MS):
        self.base_url = base_url
        self.timeout_ms = timeout_ms

    async def close_popup(self, page, locator) -> bool:
        """Dismiss the login/cookie popup if one is showing."""
        button = await locator.find(Intent.CLOSE_POPUP, timeout_ms=1000)
        if button is not None:
            await button.click()
            await random_delay(page, 500, 1000)
            logger.info("Dismissed popup")
            return True
        await page.keyboard.press("Escape")
        return False

    async def navigate_home(self, page, locator) -> bool:
        logger.info(f"Navigating to {self.base_url}")
        await page.goto(self.base_url, wait_until="domcontentloaded", timeout=self.timeout_ms)
        await random_delay(page, 1000, 2000)
        await self.close_popup(page, locator)
        return True

    async def search(self, page, locator, query: str) -> bool:
        """
        Type a query into the marketplace search box and submit it.

        Returns:
            True if the page ended up on a search results URL
        """
        search_input = await locator.find(Intent.SEARCH_INPUT)
        if search_input is None:
            logger.warning("Search input not found")
            return False

        await type_text(page, search_input, query)
        await page.keyboard.press("Enter")
        await random_delay(page, 2000, 3000)

        if "/search" not in page.url and "query=" not in page.url:
            logger.warning(f"Search for '{query}' did not reach a results page: {page.url}")
            return False
        logger.info(f"Search applied: {query}")
        return True

    async def select_category(self, page, locator, name: str) -> bool:
        category = await locator.find(Intent.CATEGORY, text=name)
        if category is None:
            logger.warning(f"Category not found on page: {name}")
            return False
        await human_click(page, category)
        await random_delay(page, 1000, 2000)
        logger.info(f"Category selected: {name}")
        return True

    async def set_location(self, page, locator, params: LocationParams) -> bool:
        """
        Point the browser geolocation at the coordinates and tell the site to
        use the current location, then re-apply the last-24-hours filter.
        """
        await page.context.set_geolocation(
            {"latitude": params.latitude, "longitude": params.longitude}
        )

        for intent, pause in (
            (Intent.LOCATION_MENU, (1000, 2000)),
            (Intent.USE_CURRENT_LOCATION, (1500, 2500)),
            (Intent.APPLY_BUTTON, (2000, 3000)),
        ):
            element = await locator.find(intent)
            if element is None:
                logger.warning(f"Location filter step not found: {intent.value}")
                return False
            await human_click(page, element)
            await random_delay(page, *pause)

        logger.info(f"Location set to {params.city} ({params.latitude}, {params.longitude}), "
                    f"radius {params.radius}")

        if not await self.apply_last_24_hours(page, locator):
            logger.warning("Location applied but last-24-hours filter was not")
        return True

    async def set_price(self, page, locator, min_price: Optional[int], max_price: Optional[int]) -> bool:
        for intent, value in ((Intent.MIN_PRICE_INPUT, min_price), (Intent.MAX_PRICE_INPUT, max_price)):
            if value is None:
                continue
            field = await locator.find(intent)
            if field is None:
                logger.warning(f"Price field not found: {intent.value}")
                return False
            await type_text(page, field, str(value))
            await page.keyboard.press("Enter")
            await random_delay(page, 800, 1200)

        logger.info(f"Price filter set: min={min_price if min_price is not None else '-'}, "
                    f"max={max_price if max_price is not None else '-'}")
        return True

    async def apply_last_24_hours(self, page, locator) -> bool:
        """
        Sort newest first and keep only listings from the last day.

        URL parameters are the primary mechanism. The menu clicks only run
        when the site redirected away from them.
        """
        target = with_last_24_hours(page.url or self.base_url)
        await page.goto(target, wait_until="domcontentloaded", timeout=self.timeout_ms)
        await random_delay(page, 1500, 2500)

        if has_last_24_hours(page.url):
            logger.info("Last 24 hours filter applied via URL")
            return True

        logger.info("URL parameters were dropped, applying last 24 hours via menus")
        for intent in LAST_24_HOURS_CLICKS:
            element = await locator.find(intent)
            if element is None:
                logger.warning(f"Date filter step not found: {intent.value}")
                return False
            await human_click(page, element)
            await random_delay(page, 800, 1500)

        logger.info("Last 24 hours filter applied via menus")
        return True
