"""
Progress Reporter
=================

Read side of the scheduler:

- :func:`build_snapshot` turns a session into an immutable
  :class:`SessionSnapshot`.  It never mutates the session.
- :func:`should_stop_polling` is the termination rule handed to clients:
  stop once the session is terminal or gone.
- :meth:`ProgressReporter.stream` is the push alternative to polling: an
  async iterator of snapshots that ends when the rule says stop.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from pydantic import BaseModel, Field

from backend.services.config import PollingConfig
from backend.services.exceptions import SessionNotFoundError
from backend.services.session_models import (
    PageTaskStatus,
    Session,
    SessionProgress,
    SessionSnapshot,
)
from backend.services.window import percentage, progress_counts

logger = logging.getLogger(__name__)


def build_snapshot(session: Session) -> SessionSnapshot:
    """Compute the point-in-time view of ``session``."""
    counts = progress_counts(session.page_tasks)
    total = len(session.page_tasks)
    completed = counts[PageTaskStatus.COMPLETED]

    return SessionSnapshot(
        session_id=session.session_id,
        document_id=session.document_id,
        doc_type=session.doc_type,
        state=session.state,
        window_range=session.window_range.model_copy(),
        current_page=session.current_page,
        progress=SessionProgress(
            total=total,
            completed=completed,
            in_progress=counts[PageTaskStatus.IN_PROGRESS],
            failed=counts[PageTaskStatus.FAILED],
            pending=counts[PageTaskStatus.PENDING],
            percentage=percentage(completed, total),
        ),
        pages_completed=session.pages_with_status(PageTaskStatus.COMPLETED),
        pages_in_progress=session.pages_with_status(PageTaskStatus.IN_PROGRESS),
        pages_failed=session.pages_with_status(PageTaskStatus.FAILED),
        pages_pending=session.pages_with_status(PageTaskStatus.PENDING),
        failure_reason=session.failure_reason,
        last_updated_at=session.last_updated_at,
    )


def should_stop_polling(snapshot: Optional[SessionSnapshot]) -> bool:
    """``None`` stands for a session that is not found."""
    return snapshot is None or snapshot.state.is_terminal


class ProgressEvent(BaseModel):
    """One message on the push channel."""

    type: str = Field(
        ..., description="Event type: snapshot, not_found, done"
    )
    snapshot: Optional[SessionSnapshot] = None
    newly_completed: List[int] = Field(default_factory=list)
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )

    def to_sse(self) -> str:
        """Format for the wire: ``data: {json}\\n\\n``."""
        return f"data: {json.dumps(self.model_dump(mode='json'))}\n\n"


class ProgressReporter:
    """
    Serves snapshots to polling or subscribed clients.

    Args:
        manager: Anything with an async ``get_status(session_id, owner_id=None)``.
        config: Polling cadence.
    """

    def __init__(self, manager, config: Optional[PollingConfig] = None) -> None:
        self._manager = manager
        self._config = config or PollingConfig()

    @property
    def config(self) -> PollingConfig:
        return self._config

    def poll_interval(self, interactive: bool = False) -> float:
        if interactive:
            return self._config.client_interval_seconds
        return self._config.status_interval_seconds

    async def snapshot(
        self, session_id: str, owner_id: Optional[str] = None
    ) -> Optional[SessionSnapshot]:
        """Current snapshot, or ``None`` when the session is unknown or expired."""
        try:
            return await self._manager.get_status(session_id, owner_id=owner_id)
        except SessionNotFoundError:
            return None

    async def stream(
        self,
        session_id: str,
        owner_id: Optional[str] = None,
        interval: Optional[float] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Yield a ``snapshot`` event whenever the session changes, then ``done``.

        A missing session yields ``not_found`` followed by ``done``.
        """
        interval = interval if interval is not None else self.poll_interval(interactive=True)
        seen_completed: set = set()
        last_updated: Optional[datetime] = None

        while True:
            snapshot = await self.snapshot(session_id, owner_id=owner_id)
            if snapshot is None:
                yield ProgressEvent(type="not_found")
                break

            if snapshot.last_updated_at != last_updated:
                last_updated = snapshot.last_updated_at
                completed = set(snapshot.pages_completed)
                yield ProgressEvent(
                    type="snapshot",
                    snapshot=snapshot,
                    newly_completed=sorted(completed - seen_completed),
                )
                seen_completed = completed

            if should_stop_polling(snapshot):
                break
            await asyncio.sleep(interval)

        logger.debug("Progress stream for session %s finished", session_id)
        yield ProgressEvent(type="done")
