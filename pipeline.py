"""
MarketRelay Listings Pipeline
One poll: health check, checkpoint and error check, extraction, filtering,
dedup and image resolution.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from config import MAX_POLL_ATTEMPTS, RETRY_BASE_SECONDS, RETRY_JITTER_SECONDS
from database import Listing
from dedup import DEFAULT_SESSION, ListingDedupStore
from errors import (
    BlockingCheckpoint,
    ExtractionFailure,
    FatalRecoveryFailure,
    InvalidFilter,
    RelayError,
    SessionDead,
    SessionNotReady,
    StaleSessionError,
    is_critical_page_error,
)
from image_cache import ImageCache
from recovery import RecoveryOrchestrator
from retry import RetryPolicy, with_bounded_retry
from scrapers.base import BaseExtractor
from scrapers.parsing import extract_year

logger = logging.getLogger(__name__)

# Read more cards than asked for, since some will already have been sent
EXTRACTION_OVERSCAN = 3


def empty_image_stats() -> Dict[str, int]:
    return {"downloaded": 0, "reused": 0, "cached": 0}


@dataclass
class PollResult:
    items: List[Listing]
    filtered_count: int = 0
    duplicates_removed: int = 0
    age_filtered_count: int = 0
    image_stats: Dict[str, int] = field(default_factory=empty_image_stats)
    recovered: bool = False
    attempts: int = 1


def apply_year_filter(items: List[Listing], min_year: Optional[int],
                      max_year: Optional[int]) -> Tuple[List[Listing], int]:
    """
    Drop items whose title year is out of bounds, then sort by year, newest
    first. Items with no detectable year are kept and sorted last.

    Returns:
        (items, number dropped)
    """
    kept = []
    for item in items:
        year = extract_year(item.title)
        if year is not None:
            if min_year is not None and year < min_year:
                logger.debug(f"Filtered out {year} < {min_year}: {item.title}")
                continue
            if max_year is not None and year > max_year:
                logger.debug(f"Filtered out {year} > {max_year}: {item.title}")
                continue
        kept.append(item)

    def sort_key(item):
        year = extract_year(item.title)
        return (year is None, -(year or 0))

    kept.sort(key=sort_key)
    return kept, len(items) - len(kept)


def dedupe_within_poll(items: List[Listing]) -> Tuple[List[Listing], int]:
    """Drop items without a URL and repeats by URL or by (title, price, location)."""
    seen_urls = set()
    seen_signatures = set()
    unique = []
    for item in items:
        if not item.url:
            logger.debug(f"Listing without URL dropped: {item.title}")
            continue
        if item.url in seen_urls:
            logger.debug(f"Duplicate by URL: {item.url}")
            continue
        if item.signature in seen_signatures:
            logger.debug(f"Duplicate by content: {item.signature}")
            continue
        seen_urls.add(item.url)
        seen_signatures.add(item.signature)
        unique.append(item)
    return unique, len(items) - len(unique)


class ListingsPipeline:
    """Runs poll cycles against the orchestrator's session."""

    def __init__(
        self,
        orchestrator: RecoveryOrchestrator,
        extractor: BaseExtractor,
        dedup: ListingDedupStore,
        images: ImageCache,
        policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.extractor = extractor
        self.dedup = dedup
        self.images = images
        self.policy = policy or RetryPolicy(
            max_attempts=MAX_POLL_ATTEMPTS,
            base_delay=RETRY_BASE_SECONDS,
            jitter=RETRY_JITTER_SECONDS,
        )
        self._sleep = sleep
        self.stats = {
            "polls": 0,
            "failed_polls": 0,
            "items_returned": 0,
            "duplicates_removed": 0,
            "images_downloaded": 0,
        }

    async def run(self, count: int = 5, session_id: str = DEFAULT_SESSION) -> PollResult:
        """
        Run one poll and return only listings never surfaced before.

        Raises:
            SessionNotReady: no browser session exists
            FatalRecoveryFailure: recovery failed during the poll
        """
        if count <= 0:
            raise InvalidFilter("count must be positive")

        async with self.orchestrator.lock:
            # Step 1: reject outright when there is no session
            self.orchestrator.handle.capture()
            self.stats["polls"] += 1
            try:
                result = await with_bounded_retry(
                    lambda attempt: self._attempt(count, session_id, attempt),
                    self.policy,
                    on_error=self._on_error,
                    sleep=self._sleep,
                )
            except Exception:
                self.stats["failed_polls"] += 1
                raise

        result.recovered = self.orchestrator.consume_recovered_notice()
        self.stats["items_returned"] += len(result.items)
        self.stats["duplicates_removed"] += result.duplicates_removed
        self.stats["images_downloaded"] += result.image_stats["downloaded"]
        logger.info(
            f"Poll returned {len(result.items)} listings "
            f"(filtered {result.filtered_count}, duplicates {result.duplicates_removed}, "
            f"age {result.age_filtered_count}, images {result.image_stats})"
        )
        return result

    async def _on_error(self, exc: BaseException, attempt: int):
        """Stop on non-retryable errors; send raw page failures through recovery."""
        if isinstance(exc, (FatalRecoveryFailure, InvalidFilter)):
            raise exc
        if isinstance(exc, SessionNotReady) and not isinstance(exc, StaleSessionError):
            raise exc
        if not isinstance(exc, RelayError) and is_critical_page_error(exc):
            await self.orchestrator.handle_critical_error(f"listings poll (attempt {attempt})")

    async def _recover_or_fail(self, reason: str):
        if not await self.orchestrator.auto_recover():
            raise FatalRecoveryFailure(f"Recovery after {reason} failed")
        raise BlockingCheckpoint(f"{reason}; session recovered")

    async def _attempt(self, count: int, session_id: str, attempt: int) -> PollResult:
        orchestrator = self.orchestrator
        handle = orchestrator.handle

        # Step 2: liveness
        if not handle.alive or await orchestrator.health.is_session_dead(handle.page):
            logger.warning("Session is dead, restarting")
            if not await orchestrator.restart_and_restore():
                raise SessionDead("Browser restart failed")
            orchestrator.status.recoveries += 1
            orchestrator.status.recovered_notice = True

        token = handle.capture()
        page = handle.page
        locator = orchestrator.locator_factory(page)

        # Step 3: checkpoint and error banner
        checkpoint = await orchestrator.checkpoint.handle(page, locator)
        if not checkpoint.ok:
            await self._recover_or_fail("undismissable checkpoint")
        if await orchestrator.health.has_blocking_error(page, locator):
            await self._recover_or_fail("error banner")

        # Step 4: extraction
        try:
            raw = await self.extractor.extract_listings(page, count * EXTRACTION_OVERSCAN)
        except ExtractionFailure as e:
            logger.warning(f"Extraction produced nothing usable: {e}")
            raw = []
        raw = list(raw or [])
        handle.ensure_current(token)

        result = PollResult(items=[], attempts=attempt)
        filters = orchestrator.filters
        items = raw

        # Step 5: degraded year filter
        if not orchestrator.status.year_filter_applied_server_side and (
                filters.min_year is not None or filters.max_year is not None):
            items, result.filtered_count = apply_year_filter(items, filters.min_year, filters.max_year)

        # Step 6: dedup within the poll, then against everything already sent
        items, in_poll = dedupe_within_poll(items)
        fresh = [item for item in items if not self.dedup.has(item.url, session_id)]
        result.duplicates_removed = in_poll + (len(items) - len(fresh))
        items = fresh

        # Step 7: age filter
        if filters.max_age_minutes:
            items, result.age_filtered_count = await self._apply_age_filter(
                items, filters.max_age_minutes, count, token)

        items = items[:count]
        handle.ensure_current(token)

        # Step 8: images
        for item in items:
            try:
                path, outcome = await self.images.resolve(item)
            except Exception as e:
                logger.warning(f"Image resolution failed for {item.url}: {e}")
                continue
            if outcome:
                result.image_stats[outcome] += 1
                item.saved_image_path = str(path)

        handle.ensure_current(token)
        for item in items:
            self.dedup.record(item.url, session_id)
        orchestrator.status.downloaded_images += result.image_stats["downloaded"]

        result.items = items
        return result

    async def _apply_age_filter(self, items: List[Listing], max_age: int, count: int,
                                token: int) -> Tuple[List[Listing], int]:
        """Keep items no older than max_age. Items whose age can't be read are dropped."""
        kept = []
        dropped = 0
        for item in items:
            if len(kept) >= count:
                break
            age = item.age_minutes
            if age is None:
                self.orchestrator.handle.ensure_current(token)
                age = await self.extractor.listing_age_minutes(self.orchestrator.handle.context, item.url)
                item.age_minutes = age
            if age is None:
                logger.info(f"Could not determine age, skipping: {item.url}")
                dropped += 1
                continue
            if age > max_age:
                logger.debug(f"Too old ({age} > {max_age} min): {item.title}")
                dropped += 1
                continue
            kept.append(item)
        return kept, dropped
