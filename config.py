"""
MarketRelay Configuration
Loads settings from environment variables and defines constants.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Base directory (where this script lives)
BASE_DIR = Path(__file__).parent.resolve()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# HTTP API
API_PORT = int(os.getenv("API_PORT", "3562"))
BACKUP_PORTS = [3563, 3564, 3565, 3566, 3567]
PORT_FILE = BASE_DIR / os.getenv("PORT_FILE", "api_port.txt")

# Marketplace
MARKETPLACE_URL = os.getenv("MARKETPLACE_URL", "https://www.facebook.com/marketplace")

# Browser settings
BROWSER_ENGINE = os.getenv("BROWSER_ENGINE", "chromium")  # chromium or firefox
BROWSER_DATA_DIR = BASE_DIR / os.getenv("BROWSER_DATA_DIR", "browser_data")
HEADLESS = _env_bool("HEADLESS")
VIEWPORT = {"width": 1366, "height": 768}
BROWSER_LANGUAGES = ["en-US", "en"]

# User agent for the persistent browser profile (kept stable across restarts)
USER_AGENT = os.getenv(
    "USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
)

# Timeouts
NAVIGATION_TIMEOUT_MS = int(os.getenv("NAVIGATION_TIMEOUT_MS", "60000"))
ACTION_TIMEOUT_MS = int(os.getenv("ACTION_TIMEOUT_MS", "5000"))
LIVENESS_TIMEOUT_SECONDS = float(os.getenv("LIVENESS_TIMEOUT_SECONDS", "5"))

# Restart / recovery
RESTART_SETTLE_SECONDS = float(os.getenv("RESTART_SETTLE_SECONDS", "2"))
RESTART_INTERVAL_MINUTES = int(os.getenv("RESTART_INTERVAL_MINUTES", "45"))
RESTART_GRACE_SECONDS = float(os.getenv("RESTART_GRACE_SECONDS", "15"))

# Poll retries (linear backoff: (base + jitter) * attempt)
MAX_POLL_ATTEMPTS = int(os.getenv("MAX_POLL_ATTEMPTS", "3"))
RETRY_BASE_SECONDS = float(os.getenv("RETRY_BASE_SECONDS", "3"))
RETRY_JITTER_SECONDS = float(os.getenv("RETRY_JITTER_SECONDS", "2"))

# Listing dedup store
DATABASE_FILE = BASE_DIR / os.getenv("DATABASE_FILE", "marketrelay.db")
MAX_GLOBAL_URLS = int(os.getenv("MAX_GLOBAL_URLS", "50000"))
MAX_SESSION_URLS = int(os.getenv("MAX_SESSION_URLS", "5000"))
FLUSH_RETAIN_URLS = int(os.getenv("FLUSH_RETAIN_URLS", "10000"))
RETENTION_HOURS = int(os.getenv("RETENTION_HOURS", "24"))
FLUSH_INTERVAL_MINUTES = int(os.getenv("FLUSH_INTERVAL_MINUTES", "10"))
RETENTION_SWEEP_MINUTES = int(os.getenv("RETENTION_SWEEP_MINUTES", "60"))

# Image cache
IMAGE_DIR = BASE_DIR / os.getenv("IMAGE_DIR", "img")
MAX_IMAGE_CACHE = int(os.getenv("MAX_IMAGE_CACHE", "5000"))
IMAGE_MAX_AGE_MINUTES = int(os.getenv("IMAGE_MAX_AGE_MINUTES", "30"))
IMAGE_DOWNLOAD_TIMEOUT = int(os.getenv("IMAGE_DOWNLOAD_TIMEOUT", "15"))
IMAGE_SWEEP_MINUTES = int(os.getenv("IMAGE_SWEEP_MINUTES", "10"))

# Memory pressure
MEMORY_CHECK_MINUTES = int(os.getenv("MEMORY_CHECK_MINUTES", "5"))
MEMORY_LIMIT_MB = int(os.getenv("MEMORY_LIMIT_MB", "1500"))

# Discord relay (optional)
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")
RELAY_ENABLED = _env_bool("RELAY_ENABLED", "true")
RELAY_INTERVAL_SECONDS = int(os.getenv("RELAY_INTERVAL_SECONDS", "300"))
RELAY_BATCH_SIZE = int(os.getenv("RELAY_BATCH_SIZE", "10"))

# File paths
CATEGORIES_FILE = BASE_DIR / os.getenv("CATEGORIES_FILE", "categories.json")
SCREENSHOT_DIR = BASE_DIR / os.getenv("SCREENSHOT_DIR", "screenshots")
LOG_FILE = BASE_DIR / os.getenv("LOG_FILE", "marketrelay.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Profile lock files left behind by a crashed browser (chromium + firefox)
PROFILE_LOCK_FILES = [
    "SingletonLock",
    "SingletonCookie",
    "SingletonSocket",
    "parent.lock",
    ".parentlock",
]
