"""
Page Task Scheduler Tests
=========================

Runs the real worker pool against in-process fake generators:

1. Happy path: every window page completes and the session completes
2. Concurrency cap across sessions
3. Page failure isolation
4. Deadline exceeded -> page failed (timeout); profile lookup fallback
5. Abort of in-flight pages and late-result discard
6. Scheduler-fatal errors fail the session
7. Lifecycle (start / stop / stats)
"""

import asyncio
import sys
from pathlib import Path
from typing import Callable, List, Optional, Set
from unittest.mock import AsyncMock

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from backend.services.config import DeadlinePolicy, DocType, SchedulerConfig, Settings
from backend.services.exceptions import PageGenerationError, StorageUnavailableError
from backend.services.generation import (
    GenerationRequest,
    GenerationResult,
    PageGenerator,
    PageProfile,
)
from backend.services.page_scheduler import PageTaskScheduler
from backend.services.session_manager import SessionManager
from backend.services.session_models import SessionState, WindowAction


# =============================================================================
# Fake generators
# =============================================================================

class FakeGenerator(PageGenerator):
    """Sleeps ``delay`` seconds per page; fails or raises fatal on request."""

    def __init__(
        self,
        delay: float = 0.0,
        fail_pages: Optional[Set[int]] = None,
        fatal_pages: Optional[Set[int]] = None,
        profile: Optional[PageProfile] = None,
    ) -> None:
        self.delay = delay
        self.fail_pages = fail_pages or set()
        self.fatal_pages = fatal_pages or set()
        self.profile = profile or PageProfile()
        self.requests: List[GenerationRequest] = []
        self.active = 0
        self.peak = 0

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if request.page in self.fatal_pages:
                raise StorageUnavailableError("bucket offline")
            if request.page in self.fail_pages:
                raise PageGenerationError(request.page, "model refused")
            return GenerationResult(result_ref=f"{request.document_id}/{request.page}")
        finally:
            self.active -= 1

    async def profile_page(self, document_id: str, page: int) -> PageProfile:
        return self.profile


class HangingGenerator(FakeGenerator):
    """Never finishes on its own."""

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class StubbornGenerator(FakeGenerator):
    """Ignores cancellation and returns a result anyway."""

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            return GenerationResult(result_ref="late")
        return GenerationResult(result_ref="on-time")


class HangingProfileGenerator(FakeGenerator):
    """Profile lookup never answers."""

    async def profile_page(self, document_id: str, page: int) -> PageProfile:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class BrokenProfileGenerator(FakeGenerator):
    """Profile lookup raises something other than an HTTP error."""

    async def profile_page(self, document_id: str, page: int) -> PageProfile:
        raise RuntimeError("profile index corrupted")


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _build(generator: PageGenerator, **config) -> PageTaskScheduler:
    manager = SessionManager(settings=Settings())
    return PageTaskScheduler(manager, generator, SchedulerConfig(**config))


# =============================================================================
# 1. Happy path
# =============================================================================

class TestHappyPath:
    """Every page of the window is generated."""

    @pytest.mark.asyncio
    async def test_session_completes(self) -> None:
        generator = FakeGenerator()
        scheduler = _build(generator)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("doc-1", 10, DocType.LECTURE, page_count=15)
            await scheduler.join()

            snapshot = await manager.get_status(result.session_id)
            assert snapshot.state is SessionState.COMPLETED
            assert snapshot.pages_completed == list(range(8, 16))
            assert snapshot.progress.percentage == 100
            assert scheduler.stats().completed == 8
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_session_follows_reader_after_window_finishes(self) -> None:
        generator = FakeGenerator()
        scheduler = _build(generator)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("doc-1", 10, DocType.LECTURE)
            sid = result.session_id
            await scheduler.join()
            assert (await manager.get_status(sid)).state is SessionState.ACTIVE

            update = await manager.update_window(sid, 11, WindowAction.EXTEND)
            await scheduler.join()

            assert update.new_pages == [16]
            snapshot = await manager.get_status(sid)
            assert snapshot.state is SessionState.ACTIVE
            assert snapshot.pages_completed == list(range(8, 17))
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_generation_order_follows_priority(self) -> None:
        generator = FakeGenerator()
        scheduler = _build(generator, max_concurrency=1)
        manager = scheduler._manager
        await scheduler.start()
        try:
            await manager.start_session("doc-1", 10, DocType.LECTURE)
            await scheduler.join()
            assert [r.page for r in generator.requests] == [10, 11, 9, 12, 13, 8, 14, 15]
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_deadline_recorded_from_profile(self) -> None:
        generator = FakeGenerator(profile=PageProfile(images_count=2, estimated_chunks=3))
        scheduler = _build(generator)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("doc-1", 10, DocType.SLIDES)
            await scheduler.join()
            session = manager._sessions[result.session_id]
            assert session.page_tasks[10].deadline_seconds == 155.0
            assert session.page_tasks[10].attempts == 1
        finally:
            await scheduler.stop()


# =============================================================================
# 2. Concurrency
# =============================================================================

class TestConcurrency:
    """The pool bounds generations across all sessions."""

    @pytest.mark.asyncio
    async def test_cap_is_global(self) -> None:
        generator = FakeGenerator(delay=0.02)
        scheduler = _build(generator, max_concurrency=2)
        manager = scheduler._manager
        await scheduler.start()
        try:
            await manager.start_session("doc-1", 10, DocType.LECTURE)
            await manager.start_session("doc-2", 1, DocType.LECTURE)
            await scheduler.join()
            assert generator.peak == 2
            assert len(generator.requests) == 14
        finally:
            await scheduler.stop()


# =============================================================================
# 3-4. Page failures
# =============================================================================

class TestPageFailures:
    """A failed page never aborts its siblings or the session."""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self) -> None:
        generator = FakeGenerator(fail_pages={11})
        scheduler = _build(generator)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("doc-1", 10, DocType.LECTURE, page_count=15)
            await scheduler.join()

            snapshot = await manager.get_status(result.session_id)
            assert snapshot.state is SessionState.COMPLETED
            assert snapshot.pages_failed == [11]
            assert len(snapshot.pages_completed) == 7
            error = manager._sessions[result.session_id].page_tasks[11].error
            assert error.startswith("GENERATION_FAILED")
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_unexpected_generator_exception_fails_page(self) -> None:
        generator = FakeGenerator()
        generator.generate = AsyncMock(side_effect=KeyError("oops"))
        scheduler = _build(generator)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("deck", 10, DocType.SLIDES)
            await scheduler.join()
            snapshot = await manager.get_status(result.session_id)
            assert snapshot.pages_failed == [10, 11]
            assert scheduler.stats().failed == 2
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self) -> None:
        generator = FakeGenerator(delay=1.0)
        tiny = DeadlinePolicy(
            base_seconds=0.05, seconds_per_image=0, seconds_per_chunk=0, max_seconds=0.05
        )
        scheduler = _build(generator, deadline=tiny)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("deck", 10, DocType.SLIDES, page_count=11)
            await scheduler.join()

            snapshot = await manager.get_status(result.session_id)
            assert snapshot.pages_failed == [10, 11]
            assert snapshot.state is SessionState.COMPLETED
            error = manager._sessions[result.session_id].page_tasks[10].error
            assert error.startswith("GENERATION_TIMEOUT")
            assert all(r.aborted for r in generator.requests)
        finally:
            await scheduler.stop()


class TestProfileFallback:
    """A broken profile lookup costs the page its estimate, never the session."""

    @pytest.mark.asyncio
    async def test_hanging_profile_uses_defaults(self) -> None:
        generator = HangingProfileGenerator()
        tiny = DeadlinePolicy(
            base_seconds=0.05, seconds_per_image=0, seconds_per_chunk=0, max_seconds=0.05
        )
        scheduler = _build(generator, deadline=tiny)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("deck", 10, DocType.SLIDES, page_count=11)
            await scheduler.join()

            snapshot = await manager.get_status(result.session_id)
            assert snapshot.state is SessionState.COMPLETED
            assert snapshot.pages_completed == [10, 11]
            assert manager._sessions[result.session_id].page_tasks[10].deadline_seconds == 0.05
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_raising_profile_uses_defaults(self) -> None:
        generator = BrokenProfileGenerator()
        scheduler = _build(generator)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("deck", 10, DocType.SLIDES, page_count=11)
            await scheduler.join()

            snapshot = await manager.get_status(result.session_id)
            assert snapshot.state is SessionState.COMPLETED
            assert snapshot.failure_reason is None
            assert snapshot.pages_completed == [10, 11]
            # 60 base + one default chunk at 15
            assert manager._sessions[result.session_id].page_tasks[10].deadline_seconds == 75.0
            assert scheduler.stats().completed == 2
        finally:
            await scheduler.stop()


# =============================================================================
# 5. Abort and late results
# =============================================================================

class TestAbort:
    """Canceled pages are aborted and their results discarded."""

    @pytest.mark.asyncio
    async def test_window_shift_aborts_in_flight_page(self) -> None:
        generator = HangingGenerator()
        scheduler = _build(generator, max_concurrency=1)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("doc-1", 10, DocType.LECTURE)
            sid = result.session_id
            await _wait_for(lambda: scheduler.stats().in_flight == 1)
            first = generator.requests[0]
            assert first.page == 10

            await manager.update_window(sid, 50, WindowAction.SHIFT)
            await _wait_for(lambda: any(r.page == 50 for r in generator.requests))

            assert first.aborted
            snapshot = await manager.get_status(sid)
            assert 10 not in snapshot.pages_in_progress
            assert snapshot.pages_in_progress == [50]
            assert [r.page for r in generator.requests] == [10, 50]

            assert await manager.cancel_session(sid) is True
            await scheduler.join()
            assert scheduler.stats().in_flight == 0
            assert scheduler.stats().discarded >= 2
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_late_result_is_not_written_back(self) -> None:
        generator = StubbornGenerator()
        scheduler = _build(generator, max_concurrency=1)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("deck", 10, DocType.SLIDES)
            sid = result.session_id
            await _wait_for(lambda: scheduler.stats().in_flight == 1)

            assert await manager.cancel_session(sid) is True
            await scheduler.join()

            snapshot = await manager.get_status(sid)
            assert snapshot.state is SessionState.CANCELED
            assert snapshot.pages_completed == []
            assert scheduler.stats().completed == 0
            assert scheduler.stats().discarded >= 1
        finally:
            await scheduler.stop()


# =============================================================================
# 6. Scheduler-fatal errors
# =============================================================================

class TestFatal:
    """Storage outages end the whole session."""

    @pytest.mark.asyncio
    async def test_storage_unavailable_fails_session(self) -> None:
        generator = FakeGenerator(fatal_pages={10})
        scheduler = _build(generator, max_concurrency=1)
        manager = scheduler._manager
        await scheduler.start()
        try:
            result = await manager.start_session("doc-1", 10, DocType.LECTURE, owner_id="u1")
            await scheduler.join()

            snapshot = await manager.get_status(result.session_id)
            assert snapshot.state is SessionState.FAILED
            assert "STORAGE_UNAVAILABLE" in snapshot.failure_reason
            assert snapshot.pages_pending == []
            assert len(generator.requests) == 1

            # Registry released: the document can be started again
            again = await manager.start_session("doc-1", 10, DocType.LECTURE, owner_id="u1")
            assert again.session_id != result.session_id
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_other_sessions_unaffected(self) -> None:
        generator = FakeGenerator(fatal_pages={10})
        scheduler = _build(generator, max_concurrency=1)
        manager = scheduler._manager
        await scheduler.start()
        try:
            doomed = await manager.start_session("doc-1", 10, DocType.SLIDES)
            healthy = await manager.start_session("doc-2", 20, DocType.SLIDES, page_count=21)
            await scheduler.join()

            assert (await manager.get_status(doomed.session_id)).state is SessionState.FAILED
            assert (await manager.get_status(healthy.session_id)).state is SessionState.COMPLETED
        finally:
            await scheduler.stop()


# =============================================================================
# 7. Lifecycle
# =============================================================================

class TestLifecycle:
    """start / stop / stats."""

    @pytest.mark.asyncio
    async def test_submit_before_start_is_queued(self) -> None:
        generator = FakeGenerator()
        scheduler = _build(generator)
        await scheduler._manager.start_session("deck", 10, DocType.SLIDES)

        stats = scheduler.stats()
        assert stats.running is False
        assert stats.queued == 2

        await scheduler.start()
        try:
            await scheduler.join()
            assert scheduler.stats().completed == 2
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_spawns_workers(self) -> None:
        scheduler = _build(FakeGenerator(), max_concurrency=4)
        await scheduler.start()
        try:
            stats = scheduler.stats()
            assert stats.running is True
            assert stats.workers == 4
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight(self) -> None:
        generator = HangingGenerator()
        generator.aclose = AsyncMock()
        scheduler = _build(generator, max_concurrency=1)
        await scheduler.start()
        await scheduler._manager.start_session("deck", 10, DocType.SLIDES)
        await _wait_for(lambda: scheduler.stats().in_flight == 1)

        await scheduler.stop()

        stats = scheduler.stats()
        assert stats.running is False
        assert stats.workers == 0
        assert stats.in_flight == 0
        assert generator.requests[0].aborted
        generator.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self) -> None:
        scheduler = _build(FakeGenerator())
        await scheduler.stop()
        assert scheduler.stats().running is False
