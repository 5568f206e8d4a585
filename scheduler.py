"""
MarketRelay Scheduler
Periodic restart, cache maintenance, memory checks and the optional relay poll.
"""

import asyncio
import logging
from typing import Optional

import psutil
from apscheduler.schedulers.asyncio import AsyncIOScheduler

import notifier
from config import (
    FLUSH_INTERVAL_MINUTES,
    IMAGE_SWEEP_MINUTES,
    MEMORY_CHECK_MINUTES,
    MEMORY_LIMIT_MB,
    RELAY_BATCH_SIZE,
    RELAY_INTERVAL_SECONDS,
    RESTART_INTERVAL_MINUTES,
    RETENTION_SWEEP_MINUTES,
)
from dedup import ListingDedupStore
from errors import SessionNotReady
from image_cache import ImageCache
from pipeline import ListingsPipeline
from recovery import RecoveryOrchestrator

logger = logging.getLogger(__name__)

RELAY_SESSION = "relay"
# Empty polls in a row before the page is refreshed
EMPTY_SCANS_BEFORE_REFRESH = 3


def process_memory_mb() -> float:
    """RSS of this process plus its children (the browser), in MB."""
    process = psutil.Process()
    rss = process.memory_info().rss
    for child in process.children(recursive=True):
        try:
            rss += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return rss / (1024 * 1024)


async def locked_job(lock: asyncio.Lock, job, *args):
    """Run a sync maintenance job on the loop while holding the session lock."""
    async with lock:
        return job(*args)


def flush_dedup(dedup: ListingDedupStore):
    try:
        dedup.flush_to_durable()
    except Exception as e:
        logger.error(f"Dedup flush failed: {e}")


def retention_sweep(dedup: ListingDedupStore):
    try:
        dedup.retention_sweep()
    except Exception as e:
        logger.error(f"Retention sweep failed: {e}")


def sweep_images(images: ImageCache):
    try:
        images.sweep_stale()
    except Exception as e:
        logger.error(f"Image sweep failed: {e}")


def check_memory(dedup: ListingDedupStore, images: ImageCache,
                 limit_mb: float = MEMORY_LIMIT_MB, rss_mb: Optional[float] = None) -> bool:
    """
    Relieve memory pressure when usage is over the limit.

    Returns:
        True if cleanup ran
    """
    usage = process_memory_mb() if rss_mb is None else rss_mb
    logger.debug(f"Memory usage: {usage:.0f} MB (limit {limit_mb} MB)")
    if usage <= limit_mb:
        return False

    logger.warning(f"Memory usage {usage:.0f} MB over {limit_mb} MB, cleaning up")
    flush_dedup(dedup)
    dedup.prune_session()
    dedup.prune_global()
    sweep_images(images)
    return True


class RelayPoller:
    """Polls for new listings and forwards them to the Discord webhook."""

    def __init__(self, orchestrator: RecoveryOrchestrator, pipeline: ListingsPipeline,
                 batch_size: int = RELAY_BATCH_SIZE):
        self.orchestrator = orchestrator
        self.pipeline = pipeline
        self.batch_size = batch_size
        self.empty_scans = 0

    async def poll(self) -> int:
        """
        Run one relay cycle.

        Returns:
            Number of listings sent
        """
        if self.orchestrator.status.restarting_soon:
            logger.info("Restart pending, skipping relay poll")
            return 0

        try:
            result = await self.pipeline.run(self.batch_size, session_id=RELAY_SESSION)
        except SessionNotReady:
            logger.info("Browser not ready, skipping relay poll")
            return 0
        except Exception as e:
            logger.error(f"Relay poll failed: {e}")
            await asyncio.to_thread(notifier.send_error_message, f"Listing poll failed: {e}")
            return 0

        if result.recovered:
            await asyncio.to_thread(notifier.send_recovered_message)

        if not result.items:
            self.empty_scans += 1
            logger.info(f"No new listings ({self.empty_scans} empty scans in a row)")
            if self.empty_scans >= EMPTY_SCANS_BEFORE_REFRESH:
                logger.info("Too many empty scans, refreshing page")
                self.empty_scans = 0
                try:
                    await self.orchestrator.refresh_page()
                except Exception as e:
                    logger.error(f"Refresh after empty scans failed: {e}")
            return 0

        self.empty_scans = 0
        return await asyncio.to_thread(notifier.send_batch, result.items)


def build_scheduler(
    orchestrator: RecoveryOrchestrator,
    dedup: ListingDedupStore,
    images: ImageCache,
    pipeline: Optional[ListingsPipeline] = None,
    relay_enabled: bool = False,
) -> AsyncIOScheduler:
    """Create (but don't start) the scheduler with every periodic job."""
    scheduler = AsyncIOScheduler()
    job_defaults = {"max_instances": 1, "coalesce": True}

    scheduler.add_job(orchestrator.scheduled_restart, "interval",
                      minutes=RESTART_INTERVAL_MINUTES, id="scheduled_restart", **job_defaults)
    # Maintenance touches the dedup tiers, so it runs on the loop under the lock
    lock = orchestrator.lock
    scheduler.add_job(locked_job, "interval", args=[lock, flush_dedup, dedup],
                      minutes=FLUSH_INTERVAL_MINUTES, id="flush_dedup", **job_defaults)
    scheduler.add_job(locked_job, "interval", args=[lock, retention_sweep, dedup],
                      minutes=RETENTION_SWEEP_MINUTES, id="retention_sweep", **job_defaults)
    scheduler.add_job(locked_job, "interval", args=[lock, sweep_images, images],
                      minutes=IMAGE_SWEEP_MINUTES, id="sweep_images", **job_defaults)
    scheduler.add_job(locked_job, "interval", args=[lock, check_memory, dedup, images],
                      minutes=MEMORY_CHECK_MINUTES, id="check_memory", **job_defaults)

    if relay_enabled and pipeline is not None:
        poller = RelayPoller(orchestrator, pipeline)
        scheduler.add_job(poller.poll, "interval",
                          seconds=RELAY_INTERVAL_SECONDS, id="relay_poll", **job_defaults)
        logger.info(f"Relay poll every {RELAY_INTERVAL_SECONDS}s")

    logger.info(f"Scheduler configured with {len(scheduler.get_jobs())} jobs")
    return scheduler
