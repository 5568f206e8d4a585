"""
MarketRelay Database Module
SQLite log of listing URLs that were already surfaced.
"""

import sqlite3
import time
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from dataclasses import dataclass

from config import DATABASE_FILE

logger = logging.getLogger(__name__)

# VACUUM after a sweep that removes more rows than this
VACUUM_THRESHOLD = 1000


@dataclass
class Listing:
    """Represents a marketplace listing snapshot read from a page."""
    url: str
    title: str
    price: str
    location: str = ""
    image_url: Optional[str] = None
    age_minutes: Optional[int] = None
    model_name: Optional[str] = None
    saved_image_path: Optional[str] = None

    @property
    def signature(self) -> Tuple[str, str, str]:
        """Content signature used to spot the same item under two URLs."""
        return (self.title, self.price, self.location)


@dataclass
class ListingRecord:
    """A previously surfaced listing URL."""
    url: str
    first_seen_ms: int


def now_ms() -> int:
    return int(time.time() * 1000)


def get_connection(db_path: Optional[Path] = None):
    """Get a database connection."""
    return sqlite3.connect(str(db_path or DATABASE_FILE))


def ensure_schema(db_path: Optional[Path] = None):
    """Create the seen_listings table if it doesn't exist."""
    conn = get_connection(db_path)
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS seen_listings (
            url TEXT PRIMARY KEY,
            first_seen_ms INTEGER NOT NULL
        )
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_first_seen_ms ON seen_listings(first_seen_ms)")

    conn.commit()
    conn.close()


def insert_url(url: str, first_seen_ms: Optional[int] = None, db_path: Optional[Path] = None) -> bool:
    """
    Record a URL. Duplicate inserts are ignored.

    Returns:
        True if a new row was written
    """
    return insert_urls([url], first_seen_ms, db_path) == 1


def insert_urls(urls: Iterable[str], first_seen_ms: Optional[int] = None,
                db_path: Optional[Path] = None) -> int:
    """
    Record many URLs in one transaction.

    Args:
        urls: URLs to store
        first_seen_ms: Timestamp to stamp new rows with (defaults to now)

    Returns:
        Number of rows actually inserted
    """
    stamp = first_seen_ms if first_seen_ms is not None else now_ms()
    rows = [(url, stamp) for url in urls if url]
    if not rows:
        return 0

    conn = get_connection(db_path)
    cursor = conn.cursor()
    before = conn.total_changes
    cursor.executemany(
        "INSERT OR IGNORE INTO seen_listings (url, first_seen_ms) VALUES (?, ?)",
        rows,
    )
    conn.commit()
    inserted = conn.total_changes - before
    conn.close()

    return inserted


def is_known(url: str, db_path: Optional[Path] = None) -> bool:
    """Check whether a URL has a durable record."""
    conn = get_connection(db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT 1 FROM seen_listings WHERE url = ?", (url,))
    row = cursor.fetchone()
    conn.close()
    return row is not None


def load_urls(limit: Optional[int] = None, db_path: Optional[Path] = None) -> List[ListingRecord]:
    """
    Load stored records, newest first.

    Args:
        limit: Maximum number of records to return
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    query = "SELECT url, first_seen_ms FROM seen_listings ORDER BY first_seen_ms DESC"
    if limit is not None:
        cursor.execute(query + " LIMIT ?", (limit,))
    else:
        cursor.execute(query)

    rows = cursor.fetchall()
    conn.close()

    return [ListingRecord(url=row[0], first_seen_ms=row[1]) for row in rows]


def delete_older_than(cutoff_ms: int, db_path: Optional[Path] = None) -> int:
    """
    Remove records first seen before the cutoff.

    Returns:
        Number of records removed
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    cursor.execute("DELETE FROM seen_listings WHERE first_seen_ms < ?", (cutoff_ms,))
    removed = cursor.rowcount
    conn.commit()

    if removed > VACUUM_THRESHOLD:
        logger.info(f"Removed {removed} rows, running VACUUM")
        conn.execute("VACUUM")

    conn.close()
    return removed


def clear_all(db_path: Optional[Path] = None) -> int:
    """Delete every record. Returns the number removed."""
    conn = get_connection(db_path)
    cursor = conn.cursor()
    cursor.execute("DELETE FROM seen_listings")
    removed = cursor.rowcount
    conn.commit()
    conn.close()
    return removed


def count(db_path: Optional[Path] = None) -> int:
    """Get number of stored records."""
    conn = get_connection(db_path)
    cursor = conn.cursor()
    cursor.execute("SELECT COUNT(*) FROM seen_listings")
    total = cursor.fetchone()[0]
    conn.close()
    return total
