"""
MarketRelay Recovery Orchestrator
Owns the browser session, the filter state and the session status.
Drives restarts, checkpoint dismissal and state restoration.
"""

import enum
import json
import asyncio
import logging
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from config import (
    CATEGORIES_FILE,
    NAVIGATION_TIMEOUT_MS,
    RESTART_GRACE_SECONDS,
    RESTART_SETTLE_SECONDS,
)
from browser.actions import FilterActions, LocationParams
from browser.checkpoint import CheckpointHandler
from browser.handle import SessionHandle
from browser.health import HealthMonitor
from browser.human import human_mouse_move, random_delay
from browser.launcher import BrowserLauncher
from browser.locator import PlaywrightLocator
from errors import (
    BlockingCheckpoint,
    FatalRecoveryFailure,
    FilterNotApplied,
    InvalidFilter,
    SessionNotReady,
    TransientNetworkError,
    is_critical_page_error,
)

logger = logging.getLogger(__name__)


class SessionStage(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    RECOVERING = "recovering"
    SCHEDULED_RESTART_PENDING = "scheduled_restart_pending"
    SCHEDULED_RESTART_FAILED = "scheduled_restart_failed"
    FATAL = "fatal"
    STOPPED = "stopped"


@dataclass
class FilterState:
    """The user's current search configuration."""
    search_query: Optional[str] = None
    selected_category: Optional[str] = None
    location: Optional[str] = None
    radius_miles: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    min_year: Optional[int] = None
    max_year: Optional[int] = None
    max_age_minutes: Optional[int] = None

    def copy(self) -> "FilterState":
        return replace(self)

    def location_params(self) -> Optional[LocationParams]:
        """Location filter to replay, or None if one was never fully set."""
        if not self.location or self.radius_miles is None:
            return None
        if self.latitude is None or self.longitude is None:
            return None
        return LocationParams(self.location, self.radius_miles, self.latitude, self.longitude)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class SessionStatus:
    """Process-wide session status, reported by /status."""
    stage: SessionStage = SessionStage.STARTING
    active: bool = False
    logged_in: bool = False
    restarting_soon: bool = False
    year_filter_applied_server_side: bool = False
    min_year: Optional[int] = None
    max_year: Optional[int] = None
    downloaded_images: int = 0
    recoveries: int = 0
    last_error: Optional[str] = None
    recovered_notice: bool = False

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["stage"] = self.stage.value
        return data


def load_categories(path: Path = CATEGORIES_FILE) -> List[Dict]:
    """
    Load marketplace categories from a JSON file.

    The file holds {"categories": [{"name": ..., "id": ..., "selector": ...}]}.
    A missing or unreadable file yields an empty list.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No categories file at {path}")
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Could not load categories from {path}: {e}")
        return []
    categories = data.get("categories", []) if isinstance(data, dict) else data
    logger.info(f"Loaded {len(categories)} categories")
    return categories


class RecoveryOrchestrator:
    """
    Single owner of the browser page.

    Public operations take self.lock. restart_session, restore_state,
    replay_filters, restart_and_restore, auto_recover and
    handle_critical_error expect the caller to hold it already.
    """

    def __init__(
        self,
        launcher: Optional[BrowserLauncher] = None,
        locator_factory: Callable = PlaywrightLocator,
        actions: Optional[FilterActions] = None,
        health: Optional[HealthMonitor] = None,
        checkpoint: Optional[CheckpointHandler] = None,
        categories: Optional[List[Dict]] = None,
        settle_seconds: float = RESTART_SETTLE_SECONDS,
        grace_seconds: float = RESTART_GRACE_SECONDS,
        on_recovered: Optional[Callable[[], Awaitable[None]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.launcher = launcher or BrowserLauncher()
        self.locator_factory = locator_factory
        self.actions = actions or FilterActions()
        self.health = health or HealthMonitor()
        self.checkpoint = checkpoint or CheckpointHandler()
        self.categories = categories if categories is not None else []
        self.settle_seconds = settle_seconds
        self.grace_seconds = grace_seconds
        self.on_recovered = on_recovered
        self._sleep = sleep

        self.handle = SessionHandle()
        self.filters = FilterState()
        self.status = SessionStatus()
        self.lock = asyncio.Lock()

    def _set_stage(self, stage: SessionStage):
        if self.status.stage != stage:
            logger.info(f"Session stage: {self.status.stage.value} -> {stage.value}")
        self.status.stage = stage

    def locator(self):
        return self.locator_factory(self.handle.page)

    # Primitives (caller holds the lock)

    async def restart_session(self, stage: SessionStage = SessionStage.RESTARTING) -> bool:
        """
        Tear down the browser and bring up a fresh one on the marketplace page.

        Never raises.

        Returns:
            True if the new session is usable
        """
        self._set_stage(stage)
        self.status.active = False

        old_context, _ = self.handle.invalidate()
        await self.launcher.close(old_context)
        await self._sleep(self.settle_seconds)

        try:
            context, page = await self.launcher.launch()
            self.handle.attach(context, page)
            locator = self.locator_factory(page)

            await self.actions.navigate_home(page, locator)
            await random_delay(page, 1000, 3000)
            await human_mouse_move(page)

            result = await self.checkpoint.handle(page, locator)
            if not result.ok:
                raise BlockingCheckpoint(
                    f"Checkpoint still present after {result.attempts} dismiss attempts"
                )

            self.status.logged_in = "/login" not in (page.url or "")
            self.status.active = True
            self.status.last_error = None
            self._set_stage(SessionStage.RUNNING)
            logger.info("Browser restarted")
            return True

        except Exception as e:
            logger.error(f"Browser restart failed: {e}", exc_info=True)
            self.status.active = False
            self.status.last_error = str(e)
            self._set_stage(SessionStage.FATAL)
            return False

    async def restore_state(self, state: Optional[FilterState] = None) -> List[str]:
        """
        Re-apply category, search query and the date filter on the current page.
        Each step is independent; a failed step is logged and skipped.

        Returns:
            Names of the steps that succeeded
        """
        state = (state or self.filters).copy()
        page = self.handle.page
        locator = self.locator_factory(page)
        restored = []

        logger.info("Restoring session state...")

        if state.selected_category:
            try:
                if await self.actions.select_category(page, locator, state.selected_category):
                    restored.append("category")
            except Exception as e:
                logger.warning(f"Could not restore category {state.selected_category}: {e}")

        if state.search_query:
            try:
                if await self.actions.search(page, locator, state.search_query):
                    restored.append("search")
            except Exception as e:
                logger.warning(f"Could not restore search '{state.search_query}': {e}")

        if state.location and state.radius_miles is not None:
            try:
                if await self.actions.apply_last_24_hours(page, locator):
                    restored.append("last_24_hours")
            except Exception as e:
                logger.warning(f"Could not restore last 24 hours filter: {e}")

        logger.info(f"State restored: {', '.join(restored) or 'nothing to restore'}")
        return restored

    async def replay_filters(self, state: FilterState) -> List[str]:
        """Re-run the location, price and year filters. Failures are logged, not raised."""
        page = self.handle.page
        locator = self.locator_factory(page)
        replayed = []

        params = state.location_params()
        if params is not None:
            try:
                if await self.actions.set_location(page, locator, params):
                    replayed.append("location")
            except Exception as e:
                logger.warning(f"Could not replay location filter: {e}")

        if state.min_price is not None or state.max_price is not None:
            try:
                if await self.actions.set_price(page, locator, state.min_price, state.max_price):
                    replayed.append("price")
            except Exception as e:
                logger.warning(f"Could not replay price filter: {e}")

        if state.min_year is not None or state.max_year is not None:
            self._apply_year_filter(state.min_year, state.max_year)
            replayed.append("year")

        return replayed

    async def restart_and_restore(self) -> bool:
        saved = self.filters.copy()
        if not await self.restart_session():
            return False
        await self.restore_state(saved)
        return True

    async def auto_recover(self) -> bool:
        """
        Restart the session and put the user's filters back.

        Returns:
            True if the session came back
        """
        saved = self.filters.copy()
        logger.warning("Starting automatic recovery...")

        if not await self.restart_session(stage=SessionStage.RECOVERING):
            logger.error("Automatic recovery failed: browser did not restart")
            self._set_stage(SessionStage.FATAL)
            return False

        self.filters = saved
        await self.restore_state(saved)
        replayed = await self.replay_filters(saved)
        logger.info(f"Replayed filters: {', '.join(replayed) or 'none'}")

        self.status.recoveries += 1
        self.status.recovered_notice = True
        self._set_stage(SessionStage.RUNNING)

        if self.on_recovered is not None:
            try:
                await self.on_recovered()
            except Exception as e:
                logger.warning(f"Recovery callback failed: {e}")

        logger.info("Automatic recovery complete")
        return True

    async def handle_critical_error(self, context: str) -> bool:
        """
        Run exactly one auto_recover for a page-level failure.

        Raises:
            FatalRecoveryFailure: if recovery did not bring the session back
        """
        logger.error(f"Critical page error during {context}, attempting recovery")
        self.status.last_error = context
        if await self.auto_recover():
            return True
        raise FatalRecoveryFailure(f"Recovery after critical error in {context} failed")

    async def _page_action(self, name: str, action):
        """Run action(page, locator) and escalate critical page errors."""
        page = self.handle.page
        locator = self.locator_factory(page)
        try:
            return await action(page, locator)
        except Exception as e:
            if isinstance(e, (InvalidFilter, FilterNotApplied, SessionNotReady)):
                raise
            if is_critical_page_error(e):
                await self.handle_critical_error(name)
                raise TransientNetworkError(
                    f"{name} was interrupted and the session was recovered; retry the request"
                ) from e
            raise

    def _apply_year_filter(self, min_year: Optional[int], max_year: Optional[int]):
        self.filters.min_year = min_year
        self.filters.max_year = max_year
        self.status.min_year = min_year
        self.status.max_year = max_year
        # The site has no native year filter, so it is always applied client-side
        self.status.year_filter_applied_server_side = False

    # Public operations (take the lock)

    async def start(self) -> bool:
        async with self.lock:
            return await self.restart_session(stage=SessionStage.STARTING)

    async def close(self):
        async with self.lock:
            context, _ = self.handle.invalidate()
            await self.launcher.close(context)
            await self.launcher.stop()
            self.status.active = False
            self._set_stage(SessionStage.STOPPED)

    async def restart_browser(self) -> bool:
        async with self.lock:
            return await self.restart_and_restore()

    async def navigate_to_marketplace(self) -> bool:
        async with self.lock:
            async def navigate(page, locator):
                await self.actions.navigate_home(page, locator)
                result = await self.checkpoint.handle(page, locator)
                if not result.ok:
                    raise BlockingCheckpoint("Checkpoint could not be dismissed")
                return True

            return await self._page_action("navigate_to_marketplace", navigate)

    async def refresh_page(self) -> bool:
        """
        Reload the page. A dead session is restarted instead.

        Raises:
            FatalRecoveryFailure: if the session could not be brought back
        """
        async with self.lock:
            page = self.handle.page

            if await self.health.is_session_dead(page):
                logger.warning("Session is dead, restarting instead of refreshing")
                if not await self.restart_and_restore():
                    raise FatalRecoveryFailure("Browser restart during refresh failed")
                return True

            try:
                await page.reload(wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
                await random_delay(page, 1500, 2500)
                await self.checkpoint.handle(page, self.locator_factory(page))
            except Exception as e:
                if not is_critical_page_error(e):
                    raise
                # Recovery reloads the page, which is what was asked for
                await self.handle_critical_error("refresh_page")
            logger.info("Page refreshed")
            return True

    async def search(self, query: str) -> bool:
        if not query or not isinstance(query, str) or not query.strip():
            raise InvalidFilter("query must be a non-empty string")
        query = query.strip()

        async with self.lock:
            self.handle.capture()
            self.filters.search_query = query

            async def apply(page, locator):
                await self.checkpoint.handle(page, locator)
                if not await self.actions.search(page, locator, query):
                    raise FilterNotApplied(f"Search for '{query}' could not be applied")
                return True

            return await self._page_action("search", apply)

    async def select_category(self, name: str) -> bool:
        if not name:
            raise InvalidFilter("category is required")
        if self.categories and not any(c.get("name") == name for c in self.categories):
            raise InvalidFilter(f"Unknown category: {name}")

        async with self.lock:
            self.handle.capture()
            self.filters.selected_category = name

            async def apply(page, locator):
                if not await self.actions.select_category(page, locator, name):
                    raise FilterNotApplied(f"Category '{name}' could not be selected")
                return True

            return await self._page_action("select_category", apply)

    async def set_location(self, city: str, radius: Optional[int],
                           latitude: Optional[float], longitude: Optional[float]) -> bool:
        if latitude is None or longitude is None:
            raise InvalidFilter("latitude and longitude are required")
        if radius is not None and radius <= 0:
            raise InvalidFilter("radius must be positive")

        async with self.lock:
            self.handle.capture()
            self.filters.location = city
            self.filters.radius_miles = radius
            self.filters.latitude = latitude
            self.filters.longitude = longitude
            params = LocationParams(city, radius, latitude, longitude)

            async def apply(page, locator):
                if not await self.actions.set_location(page, locator, params):
                    raise FilterNotApplied(f"Location '{city}' could not be applied")
                return True

            return await self._page_action("set_location", apply)

    async def set_price_filter(self, min_price: Optional[int], max_price: Optional[int]) -> bool:
        if min_price is None and max_price is None:
            raise InvalidFilter("at least one of minPrice or maxPrice is required")
        for value in (min_price, max_price):
            if value is not None and value < 0:
                raise InvalidFilter("prices must not be negative")
        if min_price is not None and max_price is not None and min_price > max_price:
            raise InvalidFilter("minPrice must not exceed maxPrice")

        async with self.lock:
            self.handle.capture()
            self.filters.min_price = min_price
            self.filters.max_price = max_price

            async def apply(page, locator):
                if not await self.actions.set_price(page, locator, min_price, max_price):
                    raise FilterNotApplied("Price filter could not be applied")
                return True

            return await self._page_action("set_price_filter", apply)

    async def set_year_filter(self, min_year: Optional[int], max_year: Optional[int]) -> Dict:
        """
        Record year bounds. Values <= 0 mean "unset".

        Returns:
            The bounds now in effect
        """
        if min_year is None and max_year is None:
            raise InvalidFilter("at least one of minYear or maxYear is required")
        min_year = min_year if min_year and min_year > 0 else None
        max_year = max_year if max_year and max_year > 0 else None

        async with self.lock:
            self._apply_year_filter(min_year, max_year)
        logger.info(f"Year filter set (client-side): {min_year or '-'} to {max_year or '-'}")
        return {"minYear": min_year, "maxYear": max_year}

    async def set_age_filter(self, max_age_minutes) -> int:
        if isinstance(max_age_minutes, float) and max_age_minutes.is_integer():
            max_age_minutes = int(max_age_minutes)
        if isinstance(max_age_minutes, bool) or not isinstance(max_age_minutes, int) \
                or max_age_minutes <= 0:
            raise InvalidFilter("maxAgeMinutes must be a positive whole number of minutes")

        async with self.lock:
            self.filters.max_age_minutes = max_age_minutes
        logger.info(f"Age filter set: at most {self.filters.max_age_minutes} minutes")
        return self.filters.max_age_minutes

    async def scheduled_restart(self) -> bool:
        """
        Periodic restart to keep browser memory in check.

        Announces the restart, waits out the grace period without holding the
        lock so consumers can finish polling, then restarts and restores.
        """
        if not self.handle.alive:
            logger.info("Skipping scheduled restart, no live session")
            return False

        logger.info(f"Scheduled restart in {self.grace_seconds}s")
        self.status.restarting_soon = True
        self._set_stage(SessionStage.SCHEDULED_RESTART_PENDING)
        try:
            await self._sleep(self.grace_seconds)
            async with self.lock:
                if not await self.restart_and_restore():
                    raise FatalRecoveryFailure("Scheduled restart failed")
            logger.info("Scheduled restart complete")
            return True
        except Exception as e:
            logger.error(f"Scheduled restart failed: {e}")
            self.status.last_error = str(e)
            self._set_stage(SessionStage.SCHEDULED_RESTART_FAILED)
            return False
        finally:
            self.status.restarting_soon = False

    def consume_recovered_notice(self) -> bool:
        notice = self.status.recovered_notice
        self.status.recovered_notice = False
        return notice

    def snapshot_status(self) -> Dict:
        data = self.status.to_dict()
        data["filters"] = self.filters.to_dict()
        data["generation"] = self.handle.generation
        return data
