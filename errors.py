"""
MarketRelay Errors
Failure taxonomy shared by the pipeline, the orchestrator and the API.
"""

# Substrings of Playwright error messages that mean the page is unusable
CRITICAL_PAGE_ERROR_MARKERS = (
    "timeout",
    "ns_binding_aborted",
    "detached",
    "target closed",
    "target page, context or browser has been closed",
    "browser has disconnected",
    "protocol error",
)


class RelayError(Exception):
    """Base class for MarketRelay errors."""


class SessionNotReady(RelayError):
    """No live page to work with. Rejected without retry."""


class StaleSessionError(SessionNotReady):
    """The session was restarted while an operation was still using it."""


class SessionDead(RelayError):
    """Liveness probe failed and the session could not be brought back."""


class BlockingCheckpoint(RelayError):
    """The site is showing an interstitial or an error banner."""


class ExtractionFailure(RelayError):
    """The extractor returned nothing usable."""


class TransientNetworkError(RelayError):
    """Timeout, aborted navigation or detached frame."""


class FatalRecoveryFailure(RelayError):
    """Automatic recovery itself failed."""


class InvalidFilter(RelayError):
    """A filter request had missing or malformed parameters."""


class FilterNotApplied(RelayError):
    """A valid filter could not be applied to the live page."""


def is_critical_page_error(exc: BaseException) -> bool:
    """True when an exception means the current page handle can't be trusted."""
    if isinstance(exc, (TransientNetworkError, SessionDead)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in CRITICAL_PAGE_ERROR_MARKERS)
