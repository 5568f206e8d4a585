"""MarketRelay Browser Package"""

from .actions import FilterActions, LocationParams
from .checkpoint import CheckpointHandler, CheckpointResult, CheckpointState
from .handle import SessionHandle
from .health import HealthMonitor
from .launcher import BrowserLauncher
from .locator import Intent, Locator, PlaywrightLocator

__all__ = [
    "BrowserLauncher",
    "CheckpointHandler",
    "CheckpointResult",
    "CheckpointState",
    "FilterActions",
    "HealthMonitor",
    "Intent",
    "LocationParams",
    "Locator",
    "PlaywrightLocator",
    "SessionHandle",
]
