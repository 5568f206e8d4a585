"""
MarketRelay Notifier Module
Relays new listings and session events to a Discord webhook.
"""

import time
import logging
from datetime import datetime, timezone
from typing import List, Optional

import requests

from config import DISCORD_WEBHOOK_URL, RELAY_BATCH_SIZE
from database import Listing

logger = logging.getLogger(__name__)

# Discord rate limit: 30 requests per minute
RATE_LIMIT_DELAY = 2.1
MAX_EMBEDS_PER_MESSAGE = 10
REQUEST_TIMEOUT = 10

LISTING_COLOR = 0x1877F2
STARTUP_COLOR = 0x00FF00
ERROR_COLOR = 0xFF0000
RECOVERED_COLOR = 0xFFA500


def _webhook(webhook_url: Optional[str]) -> str:
    return webhook_url if webhook_url is not None else DISCORD_WEBHOOK_URL


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_valid_url(url: Optional[str]) -> bool:
    """Check if URL is valid for Discord embeds."""
    if not url:
        return False
    return url.startswith("http://") or url.startswith("https://")


def _create_embed(listing: Listing) -> dict:
    """Create a Discord embed for a listing."""
    embed = {
        "title": (listing.model_name or listing.title or "Listing")[:256],
        "color": LISTING_COLOR,
        "fields": [
            {"name": "Price", "value": listing.price or "Not listed", "inline": True},
        ],
        "timestamp": _timestamp(),
    }

    if listing.age_minutes is not None:
        embed["fields"].append({"name": "Listed", "value": f"{listing.age_minutes} min ago", "inline": True})

    # Discord rejects invalid URLs
    if _is_valid_url(listing.url):
        embed["url"] = listing.url

    if listing.location:
        embed["description"] = f"📍 {listing.location}"

    if _is_valid_url(listing.image_url):
        embed["thumbnail"] = {"url": listing.image_url}

    return embed


def _post(webhook_url: str, payload: dict) -> bool:
    """POST a payload, waiting out one 429 before giving up."""
    response = requests.post(webhook_url, json=payload, timeout=REQUEST_TIMEOUT)
    if response.status_code == 429:
        retry_after = response.json().get("retry_after", 5)
        logger.warning(f"Rate limited, waiting {retry_after}s")
        time.sleep(retry_after)
        response = requests.post(webhook_url, json=payload, timeout=REQUEST_TIMEOUT)

    if response.status_code in (200, 204):
        return True
    logger.error(f"Discord error {response.status_code}: {response.text}")
    return False


def send_batch(listings: List[Listing], webhook_url: Optional[str] = None,
               batch_size: int = RELAY_BATCH_SIZE) -> int:
    """
    Send listings to Discord, several embeds per message.

    Args:
        listings: Listings to send
        webhook_url: Override for the configured webhook
        batch_size: Embeds per message (Discord allows at most 10)

    Returns:
        Number of listings sent successfully
    """
    url = _webhook(webhook_url)
    if not listings or not url:
        return 0

    size = max(1, min(batch_size, MAX_EMBEDS_PER_MESSAGE))
    sent = 0

    for i in range(0, len(listings), size):
        batch = listings[i:i + size]
        try:
            if _post(url, {"embeds": [_create_embed(listing) for listing in batch]}):
                sent += len(batch)
                logger.info(f"Relayed batch of {len(batch)} listings")
        except requests.RequestException as e:
            logger.error(f"Failed to send batch: {e}")

        # Rate limit delay between batches
        if i + size < len(listings):
            time.sleep(RATE_LIMIT_DELAY)

    return sent


def _send_notice(title: str, description: str, color: int, webhook_url: Optional[str]) -> bool:
    url = _webhook(webhook_url)
    if not url:
        return False
    payload = {
        "embeds": [{
            "title": title,
            "description": description[:2000],  # Discord description limit
            "color": color,
            "timestamp": _timestamp(),
        }]
    }
    try:
        return _post(url, payload)
    except requests.RequestException as e:
        logger.error(f"Failed to send '{title}' notice: {e}")
        return False


def send_startup_message(webhook_url: Optional[str] = None) -> bool:
    return _send_notice("MarketRelay Started", "Now relaying new marketplace listings.",
                        STARTUP_COLOR, webhook_url)


def send_error_message(error: str, webhook_url: Optional[str] = None) -> bool:
    return _send_notice("MarketRelay Error", error, ERROR_COLOR, webhook_url)


def send_recovered_message(webhook_url: Optional[str] = None) -> bool:
    """Tell the channel the browser session was restarted and filters restored."""
    return _send_notice("MarketRelay Recovered",
                        "The browser session was restarted and your filters were restored.",
                        RECOVERED_COLOR, webhook_url)


def test_webhook(webhook_url: Optional[str] = None) -> bool:
    """Check that the Discord webhook is valid and working."""
    url = _webhook(webhook_url)
    if not url:
        return False
    try:
        # GET on a webhook URL returns its info
        return requests.get(url, timeout=REQUEST_TIMEOUT).status_code == 200
    except requests.RequestException:
        return False
