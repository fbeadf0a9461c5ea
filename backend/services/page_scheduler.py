"""
Page Task Scheduler
===================

Shared worker pool that turns queued page tasks into generator calls.

- ``max_concurrency`` worker coroutines drain one ``asyncio.Queue``, so at
  most that many generations run at once across every session.
- Each page runs as its own ``asyncio.Task`` bounded by a per-page deadline
  derived from the page profile (images / text chunks).
- ``abort(session_id, pages)`` sets the request's abort event and cancels
  the generation task.  Whatever the generator still returns is offered to
  the session manager, which discards it because the page task is gone.

Outcome mapping:
    success                    -> page ``completed``
    PageGenerationError / any  -> page ``failed`` (siblings unaffected)
    deadline exceeded          -> page ``failed`` (timeout)
    SchedulerFatalError        -> session ``failed``
    profile lookup fails       -> default profile, page still runs

Usage:
    scheduler = PageTaskScheduler(manager, generator)
    await scheduler.start()
    # ... app runs ...
    await scheduler.stop()
"""

import asyncio
import logging
from typing import Dict, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field

from backend.services.config import SchedulerConfig, calculate_deadline_seconds, get_settings
from backend.services.exceptions import (
    AutoExplainError,
    PageTimeoutError,
    SchedulerFatalError,
)
from backend.services.generation import GenerationRequest, PageGenerator, PageProfile
from backend.services.session_models import PageTask

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class SchedulerStats(BaseModel):
    """Point-in-time counters for the worker pool."""

    running: bool = False
    workers: int = Field(default=0, description="Worker coroutines alive")
    queued: int = Field(default=0, description="Items waiting in the queue")
    in_flight: int = Field(default=0, description="Generations currently running")
    completed: int = 0
    failed: int = 0
    discarded: int = Field(
        default=0,
        description="Canceled items skipped plus late results thrown away",
    )


class _QueueItem(NamedTuple):
    session_id: str
    page: int
    task_id: str


class _InFlight(NamedTuple):
    task_id: str
    request: GenerationRequest
    task: asyncio.Task


def _describe(error: BaseException) -> str:
    if isinstance(error, AutoExplainError):
        return f"{error.code}: {error.message}"
    return f"{type(error).__name__}: {error}"


# =============================================================================
# Scheduler
# =============================================================================

class PageTaskScheduler:
    """
    Bounded-concurrency pool executing page tasks for every session.

    Args:
        manager: The :class:`SessionManager`; the scheduler registers itself
            with it and uses its transition API for every status change.
        generator: The page generator collaborator.
        config: Pool size and deadline policy.
    """

    def __init__(
        self,
        manager,
        generator: PageGenerator,
        config: Optional[SchedulerConfig] = None,
    ):
        self._manager = manager
        self._generator = generator
        self._config = config or get_settings().scheduler
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._in_flight: Dict[Tuple[str, int], _InFlight] = {}
        self._stopping = False
        self._completed = 0
        self._failed = 0
        self._discarded = 0

        manager.set_scheduler(self)

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and not self._stopping

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Spawn the worker coroutines."""
        if self._workers:
            logger.warning("Page task scheduler already started")
            return

        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"page-worker-{i}")
            for i in range(self._config.max_concurrency)
        ]
        logger.info(
            "Page task scheduler started with %d workers", self._config.max_concurrency
        )

    async def stop(self) -> None:
        """Cancel workers and every in-flight generation."""
        if not self._workers:
            return

        logger.info("Stopping page task scheduler...")
        self._stopping = True
        for entry in list(self._in_flight.values()):
            entry.request.abort.set()
            entry.task.cancel()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._in_flight.clear()
        await self._generator.aclose()
        logger.info("Page task scheduler stopped")

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        await self._queue.join()

    # =========================================================================
    # Called by the session manager
    # =========================================================================

    def submit(self, session_id: str, tasks: List[PageTask]) -> None:
        """Enqueue page tasks in the given (priority) order."""
        for task in tasks:
            self._queue.put_nowait(_QueueItem(session_id, task.page, task.task_id))
        logger.debug(
            "Queued pages %s for session %s", [t.page for t in tasks], session_id
        )

    def abort(self, session_id: str, pages: List[int]) -> None:
        """
        Signal in-flight generations for ``pages`` to stop.

        Queued items for these pages are skipped when dequeued.
        """
        for page in pages:
            entry = self._in_flight.get((session_id, page))
            if entry is None:
                continue
            entry.request.abort.set()
            entry.task.cancel()
            logger.info("Aborted generation of page %d for session %s", page, session_id)

    def stats(self) -> SchedulerStats:
        return SchedulerStats(
            running=self.is_running,
            workers=len(self._workers),
            queued=self._queue.qsize(),
            in_flight=len(self._in_flight),
            completed=self._completed,
            failed=self._failed,
            discarded=self._discarded,
        )

    # =========================================================================
    # Workers
    # =========================================================================

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._run_item(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Worker %d crashed on page %d of session %s: %s",
                    index, item.page, item.session_id, e,
                    exc_info=True,
                )
                await self._manager.fail_session(item.session_id, _describe(e))
            finally:
                self._queue.task_done()

    async def _run_item(self, item: _QueueItem) -> None:
        claimed = await self._manager.begin_page(item.session_id, item.page, item.task_id)
        if claimed is None:
            self._discarded += 1
            logger.debug(
                "Skipping page %d of session %s (no longer scheduled)",
                item.page, item.session_id,
            )
            return

        profile = await self._profile(claimed)
        deadline = calculate_deadline_seconds(
            images_count=profile.images_count,
            estimated_chunks=profile.estimated_chunks,
            policy=self._config.deadline,
        )
        self._manager.record_deadline(item.session_id, item.page, item.task_id, deadline)

        # Canceled while profiling
        if not self._manager.is_current(item.session_id, item.page, item.task_id):
            self._discarded += 1
            return

        request = GenerationRequest(
            session_id=claimed.session_id,
            document_id=claimed.document_id,
            page=claimed.page,
            doc_type=claimed.doc_type,
            task_id=claimed.task_id,
        )
        key = (item.session_id, item.page)
        generation = asyncio.create_task(self._generator.generate(request))
        self._in_flight[key] = _InFlight(item.task_id, request, generation)

        try:
            done, _ = await asyncio.wait({generation}, timeout=deadline)
        finally:
            entry = self._in_flight.get(key)
            if entry is not None and entry.task_id == item.task_id:
                del self._in_flight[key]
            if not generation.done():
                request.abort.set()
                generation.cancel()

        if not done:
            await self._record_failure(item, PageTimeoutError(item.page, deadline))
            return

        if generation.cancelled():
            self._discarded += 1
            logger.debug(
                "Generation of page %d for session %s was aborted",
                item.page, item.session_id,
            )
            return

        error = generation.exception()
        if isinstance(error, SchedulerFatalError):
            logger.error(
                "Fatal error generating page %d of session %s: %s",
                item.page, item.session_id, error,
            )
            await self._manager.fail_session(item.session_id, _describe(error))
            return
        if error is not None:
            await self._record_failure(item, error)
            return

        result = generation.result()
        committed = await self._manager.complete_page(
            item.session_id, item.page, item.task_id, result.result_ref
        )
        if committed:
            self._completed += 1
        else:
            self._discarded += 1

    async def _profile(self, claimed) -> PageProfile:
        """
        Cost estimate for a claimed page, bounded by the deadline ceiling.

        The page is already ``in_progress``, so a hanging or failing profile
        lookup falls back to the default estimate instead of stalling the
        worker or ending the session.
        """
        try:
            return await asyncio.wait_for(
                self._generator.profile_page(claimed.document_id, claimed.page),
                timeout=self._config.deadline.max_seconds,
            )
        except SchedulerFatalError:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                "Profiling page %d of %s timed out after %.1fs, using defaults",
                claimed.page, claimed.document_id, self._config.deadline.max_seconds,
            )
        except Exception as e:
            logger.warning(
                "Profiling page %d of %s failed, using defaults: %s",
                claimed.page, claimed.document_id, e,
                exc_info=True,
            )
        return PageProfile()

    async def _record_failure(self, item: _QueueItem, error: BaseException) -> None:
        committed = await self._manager.fail_page(
            item.session_id, item.page, item.task_id, _describe(error)
        )
        if committed:
            self._failed += 1
        else:
            self._discarded += 1


# =============================================================================
# Singleton
# =============================================================================

_page_scheduler: Optional[PageTaskScheduler] = None


def get_page_scheduler() -> PageTaskScheduler:
    """
    Get or create the PageTaskScheduler singleton.

    Raises:
        ConfigurationError: If no generation service is configured.
    """
    global _page_scheduler
    if _page_scheduler is None:
        from backend.services.generation import create_page_generator
        from backend.services.session_manager import get_session_manager

        _page_scheduler = PageTaskScheduler(
            manager=get_session_manager(),
            generator=create_page_generator(),
        )
    return _page_scheduler


def set_page_scheduler(scheduler: Optional[PageTaskScheduler]) -> None:
    """Install a scheduler instance (used by tests and the server)."""
    global _page_scheduler
    _page_scheduler = scheduler


def reset_page_scheduler() -> None:
    """Reset the singleton (useful in tests)."""
    global _page_scheduler
    _page_scheduler = None
