"""
MarketRelay - Marketplace Session Relay
Main entry point: wires the components together and serves the HTTP API.
"""

import sys
import socket
import logging
import argparse
from typing import List, Optional

import uvicorn

from config import (
    API_PORT,
    BACKUP_PORTS,
    DISCORD_WEBHOOK_URL,
    HEADLESS,
    LOG_FILE,
    LOG_LEVEL,
    PORT_FILE,
    RELAY_ENABLED,
)


def setup_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler(sys.stdout),
        ],
    )


logger = logging.getLogger("MarketRelay")


def port_is_free(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


def choose_port(preferred: int = API_PORT, backups: Optional[List[int]] = None,
                host: str = "0.0.0.0") -> int:
    """
    First bindable port among the preferred one and the backups, falling back
    to one the OS assigns.
    """
    candidates = [preferred] + list(BACKUP_PORTS if backups is None else backups)
    for port in candidates:
        if port_is_free(port, host):
            return port
        logger.info(f"Port {port} is busy, trying the next one...")

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def build_app(port: int, headless: bool, relay_enabled: bool):
    """Create every component and the FastAPI app around them."""
    from api import create_app
    from browser import BrowserLauncher
    from dedup import ListingDedupStore
    from image_cache import ImageCache
    from pipeline import ListingsPipeline
    from recovery import RecoveryOrchestrator, load_categories
    from scrapers import FacebookExtractor

    categories = load_categories()
    orchestrator = RecoveryOrchestrator(
        launcher=BrowserLauncher(headless=headless),
        categories=categories,
    )
    dedup = ListingDedupStore()
    images = ImageCache()
    pipeline = ListingsPipeline(orchestrator, FacebookExtractor(), dedup, images)

    return create_app(
        orchestrator,
        pipeline,
        dedup,
        images,
        categories=categories,
        relay_enabled=relay_enabled,
        port=port,
        port_file=PORT_FILE,
    )


def main():
    """Entry point with argument parsing."""
    parser = argparse.ArgumentParser(description="MarketRelay - Marketplace Session Relay")
    parser.add_argument("--port", type=int, default=API_PORT, help="Preferred API port")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to listen on")
    parser.add_argument("--headless", action="store_true", default=HEADLESS,
                        help="Run the browser without a visible window")
    parser.add_argument("--no-relay", action="store_true",
                        help="Don't poll and relay listings to Discord")
    args = parser.parse_args()

    setup_logging()

    logger.info("=" * 50)
    logger.info("MarketRelay Starting")
    logger.info("=" * 50)

    relay_enabled = RELAY_ENABLED and not args.no_relay and bool(DISCORD_WEBHOOK_URL)
    if RELAY_ENABLED and not args.no_relay and not DISCORD_WEBHOOK_URL:
        logger.warning("No DISCORD_WEBHOOK_URL configured, relay disabled")

    if relay_enabled:
        from notifier import test_webhook
        if not test_webhook():
            logger.warning("Discord webhook test failed - notifications may not work")

    port = choose_port(args.port, host=args.host)

    from api import write_port_file
    write_port_file(port)

    app = build_app(port, args.headless, relay_enabled)
    logger.info(f"API listening on http://localhost:{port}")
    uvicorn.run(app, host=args.host, port=port, log_config=None)

    logger.info("MarketRelay stopped")


if __name__ == "__main__":
    main()
