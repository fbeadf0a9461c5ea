"""
Session and page-task models for the auto-explain scheduler.

``Session`` and ``PageTask`` are owned exclusively by the
:class:`~backend.services.session_manager.SessionManager`; every other
component receives copies (snapshots) or goes through the manager's
transition API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from backend.services.config import DocType
from backend.services.exceptions import InvalidTransitionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class SessionState(str, Enum):
    """Valid session states.  Everything except ``active`` is terminal."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionState.ACTIVE


class PageTaskStatus(str, Enum):
    """Valid page task statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PageTaskStatus.COMPLETED, PageTaskStatus.FAILED)


class WindowAction(str, Enum):
    """Window update actions.

    ``extend`` grows the window to follow sequential reading; ``shift``
    relocates it after a jump.
    """
    EXTEND = "extend"
    SHIFT = "shift"


# Forward-only transition tables
_PAGE_TRANSITIONS: Dict[PageTaskStatus, frozenset] = {
    PageTaskStatus.PENDING: frozenset({PageTaskStatus.IN_PROGRESS}),
    PageTaskStatus.IN_PROGRESS: frozenset({PageTaskStatus.COMPLETED, PageTaskStatus.FAILED}),
    PageTaskStatus.COMPLETED: frozenset(),
    PageTaskStatus.FAILED: frozenset(),
}

_SESSION_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.ACTIVE: frozenset(
        {SessionState.COMPLETED, SessionState.CANCELED, SessionState.FAILED}
    ),
    SessionState.COMPLETED: frozenset(),
    SessionState.CANCELED: frozenset(),
    SessionState.FAILED: frozenset(),
}


# =============================================================================
# Core Models
# =============================================================================

class WindowRange(BaseModel):
    """Inclusive page bounds of a window."""

    start: int = Field(..., ge=1)
    end: int = Field(..., ge=1)

    def contains(self, page: int) -> bool:
        return self.start <= page <= self.end

    def pages(self) -> List[int]:
        return list(range(self.start, self.end + 1))

    def __len__(self) -> int:
        return self.end - self.start + 1


class PageTask(BaseModel):
    """The unit of scheduled work for a single page."""

    page: int = Field(..., ge=1)
    status: PageTaskStatus = PageTaskStatus.PENDING
    task_id: str = Field(
        default_factory=lambda: uuid4().hex,
        description="Identity of this scheduling of the page; late results with another id are discarded",
    )
    attempts: int = 0
    error: Optional[str] = None
    result_ref: Optional[str] = Field(
        default=None,
        description="Opaque pointer to generated content owned by the generator/storage",
    )
    deadline_seconds: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def advance(self, target: PageTaskStatus) -> None:
        """Move to ``target``; raises if the move is not strictly forward."""
        if target not in _PAGE_TRANSITIONS[self.status]:
            raise InvalidTransitionError("page task", self.status.value, target.value)
        self.status = target
        if target is PageTaskStatus.IN_PROGRESS:
            self.attempts += 1
            self.started_at = _utcnow()
        elif target.is_terminal:
            self.finished_at = _utcnow()


class Session(BaseModel):
    """One reader's generation run for one document."""

    session_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    owner_id: str
    doc_type: DocType
    window_range: WindowRange
    current_page: int = Field(..., ge=1)
    page_count: Optional[int] = Field(default=None, ge=1)
    state: SessionState = SessionState.ACTIVE
    page_tasks: Dict[int, PageTask] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_updated_at: datetime = Field(default_factory=_utcnow)
    last_navigated_at: datetime = Field(
        default_factory=_utcnow,
        description="Time of the last window update sent by the reader",
    )
    finished_at: Optional[datetime] = None

    def transition(self, target: SessionState) -> None:
        """Move the session to ``target``; only ``active`` has exits."""
        if target not in _SESSION_TRANSITIONS[self.state]:
            raise InvalidTransitionError("session", self.state.value, target.value)
        self.state = target
        self.touch()
        if target.is_terminal:
            self.finished_at = self.last_updated_at

    def touch(self) -> None:
        self.last_updated_at = _utcnow()

    def pages_with_status(self, status: PageTaskStatus) -> List[int]:
        return sorted(p for p, t in self.page_tasks.items() if t.status is status)

    def window_is_terminal(self) -> bool:
        """True when every page inside the window has a terminal status."""
        for page in self.window_range.pages():
            task = self.page_tasks.get(page)
            if task is None or not task.status.is_terminal:
                return False
        return True

    def window_reaches_end(self) -> bool:
        """True when the window covers the last page of a known-length document."""
        return self.page_count is not None and self.window_range.end >= self.page_count


# =============================================================================
# Results & Snapshots
# =============================================================================

class SessionProgress(BaseModel):
    """Counts over every tracked page task."""

    total: int = 0
    completed: int = 0
    in_progress: int = 0
    failed: int = 0
    pending: int = 0
    percentage: int = 0


class SessionSnapshot(BaseModel):
    """Point-in-time, read-only view of a session."""

    session_id: str
    document_id: str
    doc_type: DocType
    state: SessionState
    window_range: WindowRange
    current_page: int
    progress: SessionProgress
    pages_completed: List[int] = Field(default_factory=list)
    pages_in_progress: List[int] = Field(default_factory=list)
    pages_failed: List[int] = Field(default_factory=list)
    pages_pending: List[int] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    last_updated_at: datetime


class StartSessionResult(BaseModel):
    session_id: str
    window_range: WindowRange


class WindowUpdateResult(BaseModel):
    window_range: WindowRange
    canceled_pages: List[int] = Field(default_factory=list)
    new_pages: List[int] = Field(default_factory=list)
    action: WindowAction
