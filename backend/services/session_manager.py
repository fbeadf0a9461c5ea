"""
Session Manager
===============

Owns every auto-explain session and its window of page tasks.

Public operations (called by the API layer):
1. ``start_session``  -- claim the document in the registry, open the first window
2. ``get_status``     -- snapshot via the progress reporter
3. ``update_window``  -- ``extend`` / ``shift`` the window, cancel and enqueue pages
4. ``cancel_session`` -- stop all outstanding work and release the document

Transition API (called by the page task scheduler):
``begin_page``, ``record_deadline``, ``complete_page``, ``fail_page``,
``fail_session``.  Every call carries the page task's ``task_id``; a call
for a task that has since been canceled (or replaced) is discarded.

Completion: a session completes once every page of its window is terminal
and either the window reaches the last page of the document or the reader
has not moved the window for ``completion_idle_seconds``.  Until then a
finished window stays ``active`` so the reader can keep extending it.  The
idle rule is applied whenever a result lands and on every status read.

Registry: every window update and page result renews the registry claim.
``start_session`` reclaims a document whose holder is not a live session of
this manager (left behind by a restarted process).

Concurrency: all mutations of one session run under that session's
``asyncio.Lock``.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, NamedTuple, Optional, Set, Union

from backend.services.config import DocType, Settings, get_settings
from backend.services.exceptions import (
    SessionExistsError,
    SessionNotActiveError,
    SessionNotFoundError,
    ValidationError,
)
from backend.services.progress import build_snapshot
from backend.services.session_models import (
    PageTask,
    PageTaskStatus,
    Session,
    SessionSnapshot,
    SessionState,
    StartSessionResult,
    WindowAction,
    WindowUpdateResult,
)
from backend.services.session_registry import (
    InMemorySessionRegistry,
    RegistryKey,
    SessionRegistry,
)
from backend.services.window import (
    calculate_window,
    is_jump,
    next_window,
    prioritize_pages,
    reconcile,
    validate_page,
)

logger = logging.getLogger(__name__)


DEFAULT_OWNER_ID = "anonymous"


class ClaimedPage(NamedTuple):
    """What a worker needs after moving a page to ``in_progress``."""
    session_id: str
    document_id: str
    doc_type: DocType
    page: int
    task_id: str


def _coerce_action(action: Union[WindowAction, str]) -> WindowAction:
    try:
        return WindowAction(action)
    except ValueError as e:
        raise ValidationError(
            message=f"Unknown window action: {action!r}",
            field="action",
            original_error=e,
        ) from e


def _coerce_doc_type(doc_type: Union[DocType, str]) -> DocType:
    try:
        return DocType(doc_type)
    except ValueError as e:
        raise ValidationError(
            message=f"Unknown document type: {doc_type!r}",
            field="doc_type",
            original_error=e,
        ) from e


class SessionManager:
    """
    Service owning session lifecycle and window state.

    Args:
        registry: One-active-session lock.  Defaults to an in-memory registry.
        settings: Window policy and session TTL.  Defaults to :func:`get_settings`.
    """

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self._registry = registry if registry is not None else InMemorySessionRegistry()
        self._settings = settings or get_settings()
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Session ids between registry claim and registration
        self._claiming: Set[str] = set()
        # Page task scheduler (set by the scheduler on construction)
        self._scheduler = None

    def set_scheduler(self, scheduler) -> None:
        """
        Attach the page task scheduler.

        The scheduler must provide ``submit(session_id, tasks)`` and
        ``abort(session_id, pages)``.
        """
        self._scheduler = scheduler

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def settings(self) -> Settings:
        return self._settings

    # =========================================================================
    # Public operations
    # =========================================================================

    async def start_session(
        self,
        document_id: str,
        page: int,
        doc_type: Union[DocType, str],
        owner_id: str = DEFAULT_OWNER_ID,
        page_count: Optional[int] = None,
    ) -> StartSessionResult:
        """
        Open a session and schedule its initial window.

        Raises:
            ValidationError: Bad page, page count or document type.
            SessionExistsError: The document already has an active session.
        """
        if not document_id:
            raise ValidationError(message="document_id must be non-empty", field="document_id")
        if page_count is not None and page_count < 1:
            raise ValidationError(message="page_count must be positive", field="page_count")
        validate_page(page, page_count)
        doc_type = _coerce_doc_type(doc_type)

        window = calculate_window(page, doc_type, self._settings.window, page_count)
        session = Session(
            document_id=document_id,
            owner_id=owner_id,
            doc_type=doc_type,
            window_range=window,
            current_page=page,
            page_count=page_count,
        )

        key = RegistryKey(owner_id, document_id)
        existing = self._active_session_for(key)
        if existing is not None:
            await self._settle(existing)
            if existing.state is SessionState.ACTIVE:
                logger.info(
                    "Rejected session start for document %s: active session %s exists",
                    document_id, existing.session_id,
                )
                raise SessionExistsError(document_id, active_session_id=existing.session_id)

        self._claiming.add(session.session_id)
        try:
            if not await self._claim(key, session.session_id):
                holder = await self._registry.get_holder(key)
                logger.info(
                    "Rejected session start for document %s: active session %s exists",
                    document_id, holder,
                )
                raise SessionExistsError(document_id, active_session_id=holder)

            tasks = [PageTask(page=p) for p in prioritize_pages(window.pages(), page)]
            for task in tasks:
                session.page_tasks[task.page] = task
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = asyncio.Lock()
        finally:
            self._claiming.discard(session.session_id)

        logger.info(
            "Started session %s for document %s (%s) window=%d-%d",
            session.session_id, document_id, doc_type.value, window.start, window.end,
        )
        self._submit(session.session_id, tasks)

        return StartSessionResult(
            session_id=session.session_id,
            window_range=window.model_copy(),
        )

    async def get_status(
        self,
        session_id: str,
        owner_id: Optional[str] = None,
    ) -> SessionSnapshot:
        """
        Snapshot of a session.

        An active session whose finished window has gone idle is completed
        before the snapshot is taken.

        Raises:
            SessionNotFoundError: Unknown, expired or owned by someone else.
        """
        session = self._get_session(session_id, owner_id)
        await self._settle(session)
        return build_snapshot(session)

    async def update_window(
        self,
        session_id: str,
        current_page: int,
        action: Union[WindowAction, str],
        owner_id: Optional[str] = None,
    ) -> WindowUpdateResult:
        """
        Move the window after the reader navigated to ``current_page``.

        ``extend`` is escalated to ``shift`` when the move from the session's
        current page is a jump.  The returned ``action`` is the one applied.

        Raises:
            SessionNotFoundError: Unknown, expired or foreign session.
            SessionNotActiveError: The session is terminal.
            ValidationError: Bad page or action.
        """
        action = _coerce_action(action)
        session = self._get_session(session_id, owner_id)

        async with self._locks[session_id]:
            if session.state is not SessionState.ACTIVE:
                raise SessionNotActiveError(session_id, session.state.value)
            validate_page(current_page, session.page_count)

            effective = action
            if action is WindowAction.EXTEND and is_jump(
                session.current_page, current_page, self._settings.window.jump_threshold
            ):
                effective = WindowAction.SHIFT

            window = next_window(
                session.window_range,
                current_page,
                effective,
                session.doc_type,
                self._settings.window,
                session.page_count,
            )
            canceled, new = reconcile(session.page_tasks, window)

            for page in canceled:
                del session.page_tasks[page]
            tasks = [PageTask(page=p) for p in prioritize_pages(new, current_page)]
            for task in tasks:
                session.page_tasks[task.page] = task

            session.window_range = window
            session.current_page = current_page
            session.touch()
            session.last_navigated_at = session.last_updated_at

            logger.info(
                "Session %s %s to page %d: window=%d-%d canceled=%s new=%s",
                session_id, effective.value, current_page,
                window.start, window.end, canceled, new,
            )

            self._abort(session_id, canceled)
            self._submit(session_id, tasks)
            await self._renew(session)
            await self._maybe_complete(session)

            return WindowUpdateResult(
                window_range=window.model_copy(),
                canceled_pages=canceled,
                new_pages=new,
                action=effective,
            )

    async def cancel_session(
        self,
        session_id: str,
        owner_id: Optional[str] = None,
    ) -> bool:
        """
        Cancel an active session.

        Returns:
            True if the session was active and is now canceled, False if it
            was already terminal.

        Raises:
            SessionNotFoundError: Unknown, expired or foreign session.
        """
        session = self._get_session(session_id, owner_id)

        async with self._locks[session_id]:
            if session.state is not SessionState.ACTIVE:
                return False
            dropped = self._drop_outstanding(session)
            session.transition(SessionState.CANCELED)
            self._abort(session_id, dropped)
            await self._release(session)

        logger.info("Canceled session %s (dropped pages %s)", session_id, dropped)
        return True

    async def get_active_session(
        self,
        document_id: str,
        owner_id: str = DEFAULT_OWNER_ID,
    ) -> Optional[SessionSnapshot]:
        """Snapshot of the active session for a document, if one exists."""
        holder = await self._registry.get_holder(RegistryKey(owner_id, document_id))
        if holder is None:
            return None
        session = self._sessions.get(holder)
        if session is None:
            return None
        await self._settle(session)
        if session.state is not SessionState.ACTIVE:
            return None
        return build_snapshot(session)

    # =========================================================================
    # Transition API (scheduler side)
    # =========================================================================

    def is_current(self, session_id: str, page: int, task_id: str) -> bool:
        """False once the page was canceled, replaced or its session ended."""
        return self._current_task(session_id, page, task_id) is not None

    async def begin_page(
        self, session_id: str, page: int, task_id: str
    ) -> Optional[ClaimedPage]:
        """
        Move a pending page to ``in_progress``.

        Returns ``None`` when the page was canceled or replaced since it was
        queued; the worker must then skip it.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            return None
        async with lock:
            task = self._current_task(session_id, page, task_id)
            if task is None or task.status is not PageTaskStatus.PENDING:
                return None
            session = self._sessions[session_id]
            task.advance(PageTaskStatus.IN_PROGRESS)
            session.touch()
            return ClaimedPage(
                session_id=session_id,
                document_id=session.document_id,
                doc_type=session.doc_type,
                page=page,
                task_id=task_id,
            )

    def record_deadline(
        self, session_id: str, page: int, task_id: str, deadline_seconds: float
    ) -> None:
        task = self._current_task(session_id, page, task_id)
        if task is not None:
            task.deadline_seconds = deadline_seconds

    async def complete_page(
        self, session_id: str, page: int, task_id: str, result_ref: str
    ) -> bool:
        """Commit a result.  False means the result arrived late and was discarded."""
        return await self._finish_page(
            session_id, page, task_id, PageTaskStatus.COMPLETED, result_ref=result_ref
        )

    async def fail_page(
        self, session_id: str, page: int, task_id: str, error: str
    ) -> bool:
        """Record a page failure.  Sibling pages and the session are unaffected."""
        return await self._finish_page(
            session_id, page, task_id, PageTaskStatus.FAILED, error=error
        )

    async def fail_session(self, session_id: str, reason: str) -> bool:
        """Terminate a session after a scheduler-fatal error."""
        lock = self._locks.get(session_id)
        if lock is None:
            return False
        async with lock:
            session = self._sessions.get(session_id)
            if session is None or session.state is not SessionState.ACTIVE:
                return False
            dropped = self._drop_outstanding(session)
            session.failure_reason = reason
            session.transition(SessionState.FAILED)
            self._abort(session_id, dropped)
            await self._release(session)

        logger.error("Session %s failed: %s", session_id, reason)
        return True

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def prune_expired(self, now: Optional[datetime] = None) -> int:
        """Forget terminal sessions older than the configured TTL."""
        now = now or datetime.now(timezone.utc)
        ttl = timedelta(seconds=self._settings.session_ttl_seconds)
        expired = [
            sid
            for sid, session in self._sessions.items()
            if session.state.is_terminal
            and session.finished_at is not None
            and now - session.finished_at >= ttl
        ]
        for sid in expired:
            del self._sessions[sid]
            self._locks.pop(sid, None)
        if expired:
            logger.debug("Pruned %d expired sessions", len(expired))
        return len(expired)

    def session_count(self, state: Optional[SessionState] = None) -> int:
        if state is None:
            return len(self._sessions)
        return sum(1 for s in self._sessions.values() if s.state is state)

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _get_session(self, session_id: str, owner_id: Optional[str]) -> Session:
        self.prune_expired()
        session = self._sessions.get(session_id)
        if session is None or (owner_id is not None and session.owner_id != owner_id):
            raise SessionNotFoundError(session_id)
        return session

    def _current_task(self, session_id: str, page: int, task_id: str) -> Optional[PageTask]:
        session = self._sessions.get(session_id)
        if session is None or session.state is not SessionState.ACTIVE:
            return None
        task = session.page_tasks.get(page)
        if task is None or task.task_id != task_id:
            return None
        return task

    async def _finish_page(
        self,
        session_id: str,
        page: int,
        task_id: str,
        status: PageTaskStatus,
        result_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        lock = self._locks.get(session_id)
        if lock is None:
            logger.info("Discarding result for page %d of unknown session %s", page, session_id)
            return False
        async with lock:
            task = self._current_task(session_id, page, task_id)
            if task is None or task.status is not PageTaskStatus.IN_PROGRESS:
                logger.info(
                    "Discarding late %s for page %d of session %s",
                    status.value, page, session_id,
                )
                return False

            session = self._sessions[session_id]
            task.advance(status)
            task.result_ref = result_ref
            task.error = error
            session.touch()
            if status is PageTaskStatus.FAILED:
                logger.warning("Page %d of session %s failed: %s", page, session_id, error)
            else:
                logger.debug("Page %d of session %s completed", page, session_id)
            await self._renew(session)
            await self._maybe_complete(session)
            return True

    async def _maybe_complete(self, session: Session) -> None:
        if session.state is not SessionState.ACTIVE or not session.window_is_terminal():
            return
        if not session.window_reaches_end():
            now = datetime.now(timezone.utc)
            idle = timedelta(seconds=self._settings.completion_idle_seconds)
            if now - session.last_navigated_at < idle:
                return
        session.transition(SessionState.COMPLETED)
        await self._release(session)
        logger.info(
            "Session %s completed (%d pages done, %d failed)",
            session.session_id,
            len(session.pages_with_status(PageTaskStatus.COMPLETED)),
            len(session.pages_with_status(PageTaskStatus.FAILED)),
        )

    async def _settle(self, session: Session) -> None:
        """Apply the idle completion rule outside of a mutation."""
        if session.state is not SessionState.ACTIVE:
            return
        async with self._locks[session.session_id]:
            await self._maybe_complete(session)

    def _active_session_for(self, key: RegistryKey) -> Optional[Session]:
        for session in self._sessions.values():
            if (
                session.state is SessionState.ACTIVE
                and session.owner_id == key.owner_id
                and session.document_id == key.document_id
            ):
                return session
        return None

    def _is_live(self, session_id: str) -> bool:
        if session_id in self._claiming:
            return True
        session = self._sessions.get(session_id)
        return session is not None and session.state is SessionState.ACTIVE

    async def _claim(self, key: RegistryKey, session_id: str) -> bool:
        """
        Acquire ``key`` for ``session_id``.

        A holder that is not a live session of this manager is stale (its
        process restarted before releasing) and is cleared with a
        compare-and-delete before one more attempt.
        """
        if await self._registry.try_acquire(key, session_id):
            return True
        holder = await self._registry.get_holder(key)
        if holder is not None:
            if self._is_live(holder):
                return False
            logger.warning(
                "Reclaiming document %s from stale registry holder %s",
                key.document_id, holder,
            )
            await self._registry.release(key, holder)
        return await self._registry.try_acquire(key, session_id)

    async def _renew(self, session: Session) -> None:
        key = RegistryKey(session.owner_id, session.document_id)
        if await self._registry.refresh(key, session.session_id):
            return
        if await self._registry.try_acquire(key, session.session_id):
            logger.warning(
                "Registry claim for document %s had lapsed; re-acquired for session %s",
                session.document_id, session.session_id,
            )
            return
        logger.warning(
            "Registry entry for document %s is held by another session than %s",
            session.document_id, session.session_id,
        )

    @staticmethod
    def _drop_outstanding(session: Session) -> List[int]:
        dropped = sorted(
            p for p, t in session.page_tasks.items() if not t.status.is_terminal
        )
        for page in dropped:
            del session.page_tasks[page]
        return dropped

    async def _release(self, session: Session) -> None:
        key = RegistryKey(session.owner_id, session.document_id)
        if not await self._registry.release(key, session.session_id):
            logger.warning(
                "Registry entry for document %s was not held by session %s",
                session.document_id, session.session_id,
            )

    def _submit(self, session_id: str, tasks: List[PageTask]) -> None:
        if self._scheduler is not None and tasks:
            self._scheduler.submit(session_id, [t.model_copy() for t in tasks])

    def _abort(self, session_id: str, pages: List[int]) -> None:
        if self._scheduler is not None and pages:
            self._scheduler.abort(session_id, pages)


# =============================================================================
# Singleton
# =============================================================================

_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get or create the SessionManager singleton."""
    global _session_manager
    if _session_manager is None:
        from backend.services.session_registry import create_registry

        settings = get_settings()
        _session_manager = SessionManager(
            registry=create_registry(
                settings.registry_backend.value,
                lease_seconds=settings.registry_lease_seconds,
            ),
            settings=settings,
        )
    return _session_manager


def reset_session_manager() -> None:
    """Reset the singleton (useful in tests)."""
    global _session_manager
    _session_manager = None
