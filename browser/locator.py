"""
MarketRelay Locator
Maps a UI intent to an element on the page. All selector knowledge lives here.
"""

import enum
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from config import ACTION_TIMEOUT_MS

logger = logging.getLogger(__name__)

# Attribute used to tag an element found by the JS text search
TARGET_ATTR = "data-relay-target"


class Intent(enum.Enum):
    SEARCH_INPUT = "search_input"
    MIN_PRICE_INPUT = "min_price_input"
    MAX_PRICE_INPUT = "max_price_input"
    LOCATION_MENU = "location_menu"
    USE_CURRENT_LOCATION = "use_current_location"
    APPLY_BUTTON = "apply_button"
    SORT_MENU = "sort_menu"
    SORT_NEWEST = "sort_newest"
    DATE_LISTED_MENU = "date_listed_menu"
    LAST_24_HOURS = "last_24_hours"
    CATEGORY = "category"
    CLOSE_POPUP = "close_popup"
    ERROR_BANNER = "error_banner"
    CHECKPOINT_TEXT = "checkpoint_text"
    CHECKPOINT_DISMISS = "checkpoint_dismiss"


# (kind, value): kind is "css", "text" or "js". "{text}" is filled from find(text=...)
Strategy = Tuple[str, str]

STRATEGIES: Dict[Intent, List[Strategy]] = {
    Intent.SEARCH_INPUT: [
        ("css", 'input[type="search"][placeholder*="Marketplace"]'),
        ("css", 'input[aria-label*="Search Marketplace"]'),
        ("css", 'input[placeholder="Поиск в Marketplace"]'),
        ("css", 'input[type="search"]'),
    ],
    Intent.MIN_PRICE_INPUT: [
        ("css", 'input[aria-label="Minimum"]'),
        ("css", 'input[placeholder="Min"]'),
        ("css", 'input[aria-label="Минимум"]'),
        ("css", 'input[placeholder="Мин."]'),
    ],
    Intent.MAX_PRICE_INPUT: [
        ("css", 'input[aria-label="Maximum"]'),
        ("css", 'input[placeholder="Max"]'),
        ("css", 'input[aria-label="Максимум"]'),
        ("css", 'input[placeholder="Макс."]'),
    ],
    Intent.LOCATION_MENU: [
        ("css", "#seo_filters > div[role='button']"),
        ("css", 'div[aria-label*="location" i][role="button"]'),
        ("css", 'div[aria-label*="геолокации"]'),
    ],
    Intent.USE_CURRENT_LOCATION: [
        ("css", 'div[aria-label="Use current location"][role="button"]'),
        ("css", 'div[aria-label="Использовать текущее местоположение"][role="button"]'),
        ("text", "Use current location"),
    ],
    Intent.APPLY_BUTTON: [
        ("css", 'div[aria-label="Apply"][role="button"]'),
        ("css", 'div[aria-label="Применить"][role="button"]'),
    ],
    Intent.SORT_MENU: [
        ("css", 'div[role="button"]:has-text("Sort by")'),
        ("text", "Sort by"),
        ("text", "Сортировка:"),
        ("js", "Sort by"),
    ],
    Intent.SORT_NEWEST: [
        ("text", "Date listed: Newest first"),
        ("text", "Дата публикации: сначала новые"),
        ("js", "Newest first"),
    ],
    Intent.DATE_LISTED_MENU: [
        ("text", "Date listed"),
        ("text", "Дата размещения"),
        ("js", "Date listed"),
    ],
    Intent.LAST_24_HOURS: [
        ("text", "Last 24 hours"),
        ("text", "Последние 24 часа"),
        ("js", "Last 24 hours"),
    ],
    Intent.CATEGORY: [
        ("css", 'a[href*="/marketplace/category/"] span:text-is("{text}")'),
        ("js", "{text}"),
    ],
    Intent.CLOSE_POPUP: [
        ('css', 'div[aria-label="Close"][role="button"]'),
        ('css', 'div[aria-label="Закрыть"][role="button"]'),
        ('css', 'div[role="dialog"] div[role="button"]:has(svg)'),
    ],
    Intent.ERROR_BANNER: [
        ("text", "Something went wrong"),
        ("text", "Произошла ошибка"),
    ],
    Intent.CHECKPOINT_TEXT: [
        ("text", "automated behavior"),
        ("text", "temporarily restricted"),
        ("text", "автоматизированное поведение"),
    ],
    Intent.CHECKPOINT_DISMISS: [
        ("css", 'div[role="button"]:has-text("Decline")'),
        ("css", 'div[role="button"]:has-text("Dismiss")'),
        ("text", "Отклонить"),
    ],
}

# Finds the deepest visible element containing the text and tags it
JS_TEXT_SEARCH = """
([text, attr, token]) => {
  const nodes = Array.from(document.querySelectorAll('span, div, a, [role="button"]'));
  let best = null;
  for (const el of nodes) {
    if (!el.textContent || !el.textContent.includes(text)) continue;
    if (el.offsetParent === null) continue;
    if (!best || best.contains(el)) best = el;
  }
  if (!best) return false;
  best.setAttribute(attr, token);
  return true;
}
"""


class Locator(ABC):
    """Capability: find the element for an intent, or None."""

    @abstractmethod
    async def find(self, intent: Intent, text: Optional[str] = None,
                   timeout_ms: Optional[int] = None):
        """
        Args:
            intent: What the caller wants to interact with
            text: Fills "{text}" in parametrized strategies (e.g. category name)
            timeout_ms: How long to wait for each strategy to become visible

        Returns:
            An element reference, or None if nothing matched
        """


class PlaywrightLocator(Locator):
    """Locator backed by Playwright CSS/text selectors with a JS fallback."""

    def __init__(self, page, timeout_ms: int = ACTION_TIMEOUT_MS):
        self.page = page
        self.timeout_ms = timeout_ms

    async def find(self, intent: Intent, text: Optional[str] = None,
                   timeout_ms: Optional[int] = None):
        timeout = self.timeout_ms if timeout_ms is None else timeout_ms
        strategies = STRATEGIES.get(intent, [])

        for kind, value in strategies:
            if "{text}" in value:
                if text is None:
                    continue
                value = value.replace("{text}", text)
            try:
                element = await self._try_strategy(intent, kind, value, timeout)
                if element is not None:
                    logger.debug(f"Found {intent.value} via {kind}: {value}")
                    return element
            except Exception as e:
                logger.debug(f"Strategy {kind} '{value}' failed for {intent.value}: {e}")

        logger.debug(f"{intent.value} not found ({len(strategies)} strategies tried)")
        return None

    async def _try_strategy(self, intent: Intent, kind: str, value: str, timeout: int):
        if kind == "css":
            element = self.page.locator(value).first
        elif kind == "text":
            element = self.page.get_by_text(value, exact=False).first
        elif kind == "js":
            token = intent.value
            tagged = await self.page.evaluate(JS_TEXT_SEARCH, [value, TARGET_ATTR, token])
            if not tagged:
                return None
            element = self.page.locator(f'[{TARGET_ATTR}="{token}"]').last
        else:
            raise ValueError(f"Unknown strategy kind: {kind}")

        if await element.count() == 0:
            return None
        try:
            await element.wait_for(state="visible", timeout=timeout)
        except Exception:
            return None
        return element
