"""
MarketRelay Session Handle
The single browser context/page pair, versioned by a generation counter.
"""

import logging

from errors import SessionNotReady, StaleSessionError

logger = logging.getLogger(__name__)


class SessionHandle:
    """
    Holds the live context and page.

    Every attach or invalidate bumps the generation. Work captures the
    generation when it starts and checks it before committing side effects,
    so a restart makes stale work fail fast.
    """

    def __init__(self):
        self.context = None
        self._page = None
        self.generation = 0

    @property
    def alive(self) -> bool:
        return self._page is not None

    @property
    def page(self):
        if self._page is None:
            raise SessionNotReady("Browser is not initialized")
        return self._page

    def attach(self, context, page) -> int:
        self.context = context
        self._page = page
        self.generation += 1
        logger.debug(f"Session attached (generation {self.generation})")
        return self.generation

    def invalidate(self):
        """Drop references to the current context/page. Returns them for cleanup."""
        context, page = self.context, self._page
        self.context = None
        self._page = None
        self.generation += 1
        logger.debug(f"Session invalidated (generation {self.generation})")
        return context, page

    def capture(self) -> int:
        if self._page is None:
            raise SessionNotReady("Browser is not initialized")
        return self.generation

    def ensure_current(self, token: int):
        if token != self.generation or self._page is None:
            raise StaleSessionError(
                f"Session changed during operation (started on {token}, now {self.generation})"
            )
