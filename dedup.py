"""
MarketRelay Listing Dedup Store
Two bounded in-memory tiers (global and per-session) in front of the
durable seen_listings table.
"""

import logging
from collections import OrderedDict
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import database
from config import (
    MAX_GLOBAL_URLS,
    MAX_SESSION_URLS,
    FLUSH_RETAIN_URLS,
    RETENTION_HOURS,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


class ListingDedupStore:
    """Guarantees a listing URL is surfaced at most once."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        max_global: int = MAX_GLOBAL_URLS,
        max_session: int = MAX_SESSION_URLS,
        flush_retain: int = FLUSH_RETAIN_URLS,
    ):
        """
        Initialize the store.

        Args:
            db_path: SQLite file (defaults to config.DATABASE_FILE)
            max_global: Capacity of the global tier
            max_session: Capacity of each session tier
            flush_retain: Entries kept in the global tier after a flush
        """
        self.db_path = db_path
        self.max_global = max_global
        self.max_session = max_session
        self.flush_retain = min(flush_retain, max_global)
        # Insertion-ordered so trimming drops the oldest first
        self._global: "OrderedDict[str, None]" = OrderedDict()
        self._sessions: Dict[str, "OrderedDict[str, None]"] = {}
        database.ensure_schema(self.db_path)

    def load(self) -> int:
        """Refill the global tier from the durable store. Returns entries loaded."""
        records = database.load_urls(limit=self.max_global, db_path=self.db_path)
        self._global.clear()
        # Newest first from the DB, so insert oldest first to keep order
        for record in reversed(records):
            self._global[record.url] = None
        logger.info(f"Loaded {len(self._global)} known URLs into global cache")
        return len(self._global)

    def _session(self, session_id: str) -> "OrderedDict[str, None]":
        if session_id not in self._sessions:
            self._sessions[session_id] = OrderedDict()
        return self._sessions[session_id]

    def has(self, url: str, session_id: str = DEFAULT_SESSION) -> bool:
        """Check both tiers, then the durable store."""
        if not url:
            return False
        if url in self._global:
            return True
        session = self._sessions.get(session_id)
        if session is not None and url in session:
            return True
        try:
            if database.is_known(url, db_path=self.db_path):
                # Trimmed from memory earlier; warm it back up
                self._global[url] = None
                self.prune_global()
                return True
        except Exception as e:
            logger.warning(f"Durable lookup failed for {url}: {e}")
        return False

    def record(self, url: str, session_id: str = DEFAULT_SESSION) -> bool:
        """
        Mark a URL as surfaced. Idempotent.

        Returns:
            True if the URL was not known before
        """
        if not url:
            return False

        is_new = url not in self._global
        self._global[url] = None
        self._session(session_id)[url] = None

        try:
            database.insert_url(url, db_path=self.db_path)
        except Exception as e:
            # Stays in memory; the next flush writes it through
            logger.error(f"Failed to persist {url}: {e}")

        self.prune_global()
        self.prune_session(session_id)
        return is_new

    def filter_new(self, urls: Iterable[str], session_id: str = DEFAULT_SESSION) -> List[str]:
        """Return the URLs not yet known, preserving order."""
        return [url for url in urls if not self.has(url, session_id)]

    def prune_session(self, session_id: Optional[str] = None) -> int:
        """Drop the oldest entries of one (or every) session tier over capacity."""
        targets = [session_id] if session_id is not None else list(self._sessions)
        removed = 0
        for sid in targets:
            session = self._sessions.get(sid)
            if session is None:
                continue
            while len(session) > self.max_session:
                session.popitem(last=False)
                removed += 1
        if removed:
            logger.debug(f"Pruned {removed} session cache entries")
        return removed

    def prune_global(self) -> int:
        """Drop the oldest global entries over capacity."""
        removed = 0
        while len(self._global) > self.max_global:
            self._global.popitem(last=False)
            removed += 1
        if removed:
            logger.debug(f"Pruned {removed} global cache entries")
        return removed

    def flush_to_durable(self) -> int:
        """
        Write every global entry through to the durable store, then trim the
        in-memory tier down to its retained tail.

        Returns:
            Number of rows that were new to the durable store
        """
        urls = list(self._global)
        saved = database.insert_urls(urls, db_path=self.db_path)

        excess = len(self._global) - self.flush_retain
        for _ in range(max(0, excess)):
            self._global.popitem(last=False)

        logger.info(f"Flushed cache: {saved} new rows saved, {len(self._global)} URLs kept in memory")
        return saved

    def retention_sweep(self, max_age_hours: int = RETENTION_HOURS, now_ms: Optional[int] = None) -> int:
        """Delete durable rows older than max_age_hours. Returns rows removed."""
        now = now_ms if now_ms is not None else database.now_ms()
        cutoff = now - int(timedelta(hours=max_age_hours).total_seconds() * 1000)
        removed = database.delete_older_than(cutoff, db_path=self.db_path)
        logger.info(f"Retention sweep removed {removed} records")
        return removed

    def clear(self, include_sessions: bool = False) -> Dict[str, int]:
        """
        Forget every known URL.

        Session tiers survive unless include_sessions is set, so a consumer is
        never resent something it already received.
        """
        result = {
            "global": len(self._global),
            "durable": database.clear_all(db_path=self.db_path),
            "sessions": 0,
        }
        self._global.clear()
        if include_sessions:
            result["sessions"] = sum(len(s) for s in self._sessions.values())
            self._sessions.clear()
        logger.info(f"Cleared listing cache: {result}")
        return result

    def stats(self) -> Dict[str, int]:
        """Tier sizes and durable row count."""
        try:
            durable = database.count(db_path=self.db_path)
        except Exception as e:
            logger.warning(f"Could not count durable rows: {e}")
            durable = -1
        return {
            "global": len(self._global),
            "sessions": len(self._sessions),
            "session_entries": sum(len(s) for s in self._sessions.values()),
            "durable": durable,
        }

    def global_size(self) -> int:
        return len(self._global)

    def session_size(self, session_id: str = DEFAULT_SESSION) -> int:
        return len(self._sessions.get(session_id, ()))
