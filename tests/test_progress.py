"""
Tests for backend.services.progress
====================================

Snapshot building, the polling termination rule and the push stream.
The stream is driven by a scripted manager so each poll returns a chosen
snapshot.
"""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from backend.services.config import DocType, PollingConfig
from backend.services.exceptions import SessionNotFoundError
from backend.services.progress import (
    ProgressEvent,
    ProgressReporter,
    build_snapshot,
    should_stop_polling,
)
from backend.services.session_models import (
    PageTask,
    PageTaskStatus,
    Session,
    SessionProgress,
    SessionSnapshot,
    SessionState,
    WindowRange,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _snapshot(
    state: SessionState = SessionState.ACTIVE,
    completed: Optional[List[int]] = None,
    seconds: int = 0,
) -> SessionSnapshot:
    completed = completed or []
    return SessionSnapshot(
        session_id="s-1",
        document_id="doc-1",
        doc_type=DocType.SLIDES,
        state=state,
        window_range=WindowRange(start=10, end=11),
        current_page=10,
        progress=SessionProgress(total=2, completed=len(completed)),
        pages_completed=completed,
        last_updated_at=T0 + timedelta(seconds=seconds),
    )


class ScriptedManager:
    """Returns the scripted snapshots in order; the last one repeats."""

    def __init__(self, script: List[Optional[SessionSnapshot]]) -> None:
        self._script = list(script)
        self.calls = 0

    async def get_status(self, session_id: str, owner_id: Optional[str] = None) -> SessionSnapshot:
        self.calls += 1
        item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if item is None:
            raise SessionNotFoundError(session_id)
        return item


# =============================================================================
# build_snapshot
# =============================================================================

class TestBuildSnapshot:
    """Snapshots are computed from the session without mutating it."""

    def test_counts_and_lists(self) -> None:
        session = Session(
            document_id="doc-1",
            owner_id="u1",
            doc_type=DocType.LECTURE,
            window_range=WindowRange(start=8, end=11),
            current_page=10,
            page_tasks={
                8: PageTask(page=8, status=PageTaskStatus.COMPLETED),
                9: PageTask(page=9, status=PageTaskStatus.FAILED),
                10: PageTask(page=10, status=PageTaskStatus.IN_PROGRESS),
                11: PageTask(page=11),
            },
        )
        before = session.model_dump()

        snapshot = build_snapshot(session)

        assert snapshot.pages_completed == [8]
        assert snapshot.pages_failed == [9]
        assert snapshot.pages_in_progress == [10]
        assert snapshot.pages_pending == [11]
        assert snapshot.progress.total == 4
        assert snapshot.progress.percentage == 25
        assert session.model_dump() == before

    def test_snapshot_is_detached(self) -> None:
        session = Session(
            document_id="doc-1",
            owner_id="u1",
            doc_type=DocType.LECTURE,
            window_range=WindowRange(start=8, end=15),
            current_page=10,
        )
        snapshot = build_snapshot(session)
        session.window_range.end = 99
        assert snapshot.window_range.end == 15

    def test_empty_session(self) -> None:
        session = Session(
            document_id="doc-1",
            owner_id="u1",
            doc_type=DocType.OTHER,
            window_range=WindowRange(start=1, end=1),
            current_page=1,
        )
        assert build_snapshot(session).progress.percentage == 0


# =============================================================================
# Termination rule
# =============================================================================

class TestShouldStopPolling:
    @pytest.mark.parametrize(
        "state", [SessionState.COMPLETED, SessionState.CANCELED, SessionState.FAILED]
    )
    def test_terminal_states_stop(self, state: SessionState) -> None:
        assert should_stop_polling(_snapshot(state=state)) is True

    def test_active_continues(self) -> None:
        assert should_stop_polling(_snapshot()) is False

    def test_not_found_stops(self) -> None:
        assert should_stop_polling(None) is True


# =============================================================================
# ProgressReporter
# =============================================================================

class TestProgressReporter:
    """Polling helpers and the push stream."""

    def test_poll_intervals(self) -> None:
        reporter = ProgressReporter(ScriptedManager([_snapshot()]))
        assert reporter.poll_interval() == 5.0
        assert reporter.poll_interval(interactive=True) == 2.0

    def test_custom_intervals(self) -> None:
        config = PollingConfig(status_interval_seconds=7, client_interval_seconds=1)
        reporter = ProgressReporter(ScriptedManager([_snapshot()]), config)
        assert reporter.poll_interval() == 7
        assert reporter.poll_interval(interactive=True) == 1

    @pytest.mark.asyncio
    async def test_snapshot_returns_none_when_missing(self) -> None:
        reporter = ProgressReporter(ScriptedManager([None]))
        assert await reporter.snapshot("s-1") is None

    @pytest.mark.asyncio
    async def test_stream_until_terminal(self) -> None:
        manager = ScriptedManager(
            [
                _snapshot(seconds=0),
                _snapshot(seconds=0),
                _snapshot(completed=[10], seconds=1),
                _snapshot(state=SessionState.COMPLETED, completed=[10, 11], seconds=2),
            ]
        )
        reporter = ProgressReporter(manager)

        events = [e async for e in reporter.stream("s-1", interval=0.001)]

        assert [e.type for e in events] == ["snapshot", "snapshot", "snapshot", "done"]
        assert [e.newly_completed for e in events[:3]] == [[], [10], [11]]
        assert events[2].snapshot.state is SessionState.COMPLETED
        assert manager.calls == 4

    @pytest.mark.asyncio
    async def test_stream_session_disappears(self) -> None:
        reporter = ProgressReporter(ScriptedManager([_snapshot(), None]))

        events = [e async for e in reporter.stream("s-1", interval=0.001)]

        assert [e.type for e in events] == ["snapshot", "not_found", "done"]

    @pytest.mark.asyncio
    async def test_stream_already_terminal(self) -> None:
        reporter = ProgressReporter(
            ScriptedManager([_snapshot(state=SessionState.CANCELED)])
        )
        events = [e async for e in reporter.stream("s-1", interval=0.001)]
        assert [e.type for e in events] == ["snapshot", "done"]


class TestProgressEvent:
    def test_sse_format(self) -> None:
        event = ProgressEvent(type="snapshot", snapshot=_snapshot(), newly_completed=[10])
        wire = event.to_sse()
        assert wire.startswith("data: ")
        assert wire.endswith("\n\n")
        payload = json.loads(wire[len("data: "):].strip())
        assert payload["type"] == "snapshot"
        assert payload["newly_completed"] == [10]
        assert payload["snapshot"]["state"] == "active"
