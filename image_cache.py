"""
MarketRelay Image Cache
Bounded map from a listing's content fingerprint to a locally cached image.
"""

import re
import time
import asyncio
import hashlib
import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Optional, Tuple

import requests

from database import Listing
from config import (
    IMAGE_DIR,
    MAX_IMAGE_CACHE,
    IMAGE_MAX_AGE_MINUTES,
    IMAGE_DOWNLOAD_TIMEOUT,
    USER_AGENT,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg")


def clean_content_key(title: str, price: str, location: str) -> str:
    """Join title/price/location with non-alphanumerics replaced by '_'."""
    return re.sub(r"[^a-zA-Z0-9А-Яа-я]", "_", f"{title}_{price}_{location}")


def fingerprint(title: str, price: str, location: str) -> str:
    """Stable hash of (title, price, location)."""
    cleaned = clean_content_key(title, price, location)
    return hashlib.md5(cleaned.encode("utf-8")).hexdigest()


def stable_file_name(title: str, price: str, location: str) -> str:
    """File name that stays the same for the same listing content."""
    cleaned = clean_content_key(title, price, location)
    return f"{cleaned[:30]}_{fingerprint(title, price, location)[:8]}.png"


def download_image(url: str, path: Path, timeout: int = IMAGE_DOWNLOAD_TIMEOUT):
    """Stream an image to disk. Raises requests.RequestException on failure."""
    response = requests.get(
        url,
        headers={"User-Agent": USER_AGENT},
        stream=True,
        timeout=timeout,
    )
    response.raise_for_status()

    tmp_path = path.with_suffix(path.suffix + ".part")
    try:
        with open(tmp_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=8192):
                if chunk:
                    f.write(chunk)
        tmp_path.replace(path)
    finally:
        response.close()
        if tmp_path.exists():
            tmp_path.unlink()


class ImageCache:
    """FIFO-bounded fingerprint -> file name map over an image directory."""

    def __init__(
        self,
        image_dir: Path = IMAGE_DIR,
        max_entries: int = MAX_IMAGE_CACHE,
        max_age_minutes: int = IMAGE_MAX_AGE_MINUTES,
        downloader=download_image,
    ):
        self.image_dir = Path(image_dir)
        self.max_entries = max_entries
        self.max_age_minutes = max_age_minutes
        self._downloader = downloader
        self._entries: "OrderedDict[str, str]" = OrderedDict()
        self.image_dir.mkdir(parents=True, exist_ok=True)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key: str):
        return key in self._entries

    def remember(self, key: str, file_name: str) -> int:
        """
        Store an entry, evicting the earliest-inserted ones over capacity.

        Returns:
            Number of entries evicted
        """
        self._entries[key] = file_name
        evicted = 0
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            evicted += 1
        if evicted:
            logger.debug(f"Image cache trimmed to {len(self._entries)} entries")
        return evicted

    async def resolve(self, listing: Listing) -> Tuple[Optional[Path], Optional[str]]:
        """
        Find or fetch the image for a listing.

        Returns:
            (path, outcome) where outcome is "cached", "reused", "downloaded",
            or None if there is no image
        """
        if not listing.image_url:
            return None, None

        key = fingerprint(listing.title, listing.price, listing.location)

        cached_name = self._entries.get(key)
        if cached_name is not None:
            cached_path = self.image_dir / cached_name
            if cached_path.exists():
                logger.debug(f"Using cached image for {listing.title} -> {cached_name}")
                return cached_path, "cached"
            del self._entries[key]

        file_name = stable_file_name(listing.title, listing.price, listing.location)
        path = self.image_dir / file_name

        if path.exists():
            logger.debug(f"Image file already on disk, reusing: {file_name}")
            self.remember(key, file_name)
            return path, "reused"

        try:
            await asyncio.to_thread(self._downloader, listing.image_url, path)
        except Exception as e:
            logger.error(f"Failed to download image for {listing.title}: {e}")
            return None, None

        logger.debug(f"Image saved: {path}")
        self.remember(key, file_name)
        return path, "downloaded"

    def sweep_stale(self, max_age_minutes: Optional[int] = None) -> int:
        """
        Delete image files whose modification time is older than the threshold.
        Independent of the in-memory map.

        Returns:
            Number of files deleted
        """
        max_age = self.max_age_minutes if max_age_minutes is None else max_age_minutes
        threshold = time.time() - max_age * 60
        deleted = 0

        if not self.image_dir.exists():
            return 0

        for file_path in self.image_dir.iterdir():
            if not file_path.is_file() or file_path.suffix.lower() not in IMAGE_EXTENSIONS:
                continue
            try:
                if file_path.stat().st_mtime < threshold:
                    file_path.unlink()
                    deleted += 1
            except OSError as e:
                logger.error(f"Error removing {file_path}: {e}")

        if deleted:
            logger.info(f"Removed {deleted} stale images from {self.image_dir}")
        return deleted

    def clear(self) -> int:
        """Empty the map and sweep stale files. Returns files deleted."""
        self._entries.clear()
        return self.sweep_stale()

    def stats(self) -> Dict[str, int]:
        files = 0
        if self.image_dir.exists():
            files = sum(1 for p in self.image_dir.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS)
        return {"entries": len(self._entries), "files": files, "capacity": self.max_entries}
