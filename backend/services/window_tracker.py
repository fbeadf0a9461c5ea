"""
Window Tracker
==============

Turns a stream of raw "current page" observations (scrolling) into
debounced, classified page-change events.

- Every ``track_page`` call (re)starts a quiet-period timer
  (``asyncio.create_task`` + ``asyncio.sleep``).  Only the last page seen
  within the quiet period is reported.
- When the timer fires the page is compared with the last reported page:
  ``is_jump = abs(page - last_reported) > jump_threshold``.
- ``on_page_change(page, is_jump)`` may be a plain function or a coroutine
  function.

Usage::

    async def on_change(page: int, is_jump: bool) -> None:
        action = WindowAction.SHIFT if is_jump else WindowAction.EXTEND
        await manager.update_window(session_id, page, action)

    tracker = WindowTracker(on_change, TrackerConfig(), initial_page=10)
    tracker.track_page(11)
    tracker.track_page(12)
    # 300ms later: on_change(12, False)
    await tracker.aclose()
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from backend.services.config import TrackerConfig
from backend.services.window import is_jump, validate_page

logger = logging.getLogger(__name__)


PageChangeCallback = Callable[[int, bool], Any]


class WindowTracker:
    """
    Debounces page observations for one reader.

    Attributes:
        config: Debounce interval, jump threshold and initial enabled flag.
        last_reported: Last page passed to the callback (or the initial page).
    """

    def __init__(
        self,
        on_page_change: PageChangeCallback,
        config: Optional[TrackerConfig] = None,
        initial_page: Optional[int] = None,
    ) -> None:
        if initial_page is not None:
            validate_page(initial_page)
        self._on_page_change = on_page_change
        self._config = config or TrackerConfig()
        self._enabled = self._config.enabled
        self._candidate: Optional[int] = None
        self._timer: Optional[asyncio.Task] = None
        self._disposed = False
        self.last_reported: Optional[int] = initial_page

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = bool(value)
        if not self._enabled:
            self._cancel_timer()
            self._candidate = None

    @property
    def pending(self) -> bool:
        """Whether a debounce timer is currently armed."""
        return self._timer is not None and not self._timer.done()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def track_page(self, page: int) -> None:
        """
        Record ``page`` as the reader's current page.

        Raises:
            InvalidPageError: If ``page`` is not a positive integer.
        """
        validate_page(page)
        if self._disposed or not self._enabled:
            return

        self._candidate = page
        self._cancel_timer()
        self._timer = asyncio.create_task(self._fire_after_quiet_period())

    def dispose(self) -> None:
        """Cancel any pending timer; no callback fires afterwards."""
        self._disposed = True
        self._candidate = None
        self._cancel_timer()

    async def aclose(self) -> None:
        """Dispose and wait for the cancelled timer to unwind."""
        timer = self._timer
        self.dispose()
        if timer is not None:
            await asyncio.gather(timer, return_exceptions=True)

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _fire_after_quiet_period(self) -> None:
        await asyncio.sleep(self._config.debounce_seconds)

        # Detach so a track_page during the callback starts a fresh timer
        # instead of cancelling this one.
        self._timer = None
        page = self._candidate
        self._candidate = None
        if page is None or self._disposed or not self._enabled:
            return
        if page == self.last_reported:
            logger.debug("Page %d unchanged, nothing to report", page)
            return

        jump = self.last_reported is not None and is_jump(
            self.last_reported, page, self._config.jump_threshold
        )
        self.last_reported = page
        logger.debug("Reporting page %d (jump=%s)", page, jump)

        try:
            outcome = self._on_page_change(page, jump)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error(
                "Page change callback failed for page %d: %s", page, exc, exc_info=True
            )
