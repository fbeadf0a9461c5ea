"""
Explain Session Router - Sliding-window page explanation sessions.

Endpoints:
- POST   /api/ai/explain-page/session                     - Start a session
- GET    /api/ai/explain-page/session?document_id=...     - Active session for a document
- GET    /api/ai/explain-page/session/{session_id}        - Status snapshot
- PATCH  /api/ai/explain-page/session/{session_id}        - Extend / shift the window
- DELETE /api/ai/explain-page/session/{session_id}        - Cancel the session
- GET    /api/ai/explain-page/session/{session_id}/events - SSE snapshot stream
- GET    /api/ai/explain-page/scheduler/stats             - Worker pool counters

Every session endpoint is scoped by the ``X-User-Id`` header; another
owner's session is reported as not found.
"""

import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from backend.services.exceptions import AutoExplainError, SessionNotFoundError
from backend.services.generation import DocumentClassifier
from backend.services.page_scheduler import PageTaskScheduler, SchedulerStats
from backend.services.progress import ProgressReporter
from backend.services.session_manager import SessionManager
from backend.services.session_models import SessionSnapshot
from lib.api.shared import (
    CancelSessionResponse,
    StartSessionRequest,
    StartSessionResponse,
    UpdateWindowRequest,
    UpdateWindowResponse,
    get_classifier,
    get_manager,
    get_owner_id,
    get_reporter,
    get_scheduler,
    to_http_exception,
    verify_api_key,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai/explain-page", tags=["explain-page"])


# =============================================================================
# Sessions
# =============================================================================

@router.post("/session", response_model=StartSessionResponse, status_code=202)
async def start_session(
    request: StartSessionRequest,
    owner_id: str = Depends(get_owner_id),
    manager: SessionManager = Depends(get_manager),
    reporter: ProgressReporter = Depends(get_reporter),
    classifier: DocumentClassifier = Depends(get_classifier),
    _: bool = Depends(verify_api_key),
) -> StartSessionResponse:
    """
    Start generating explanations around ``page``.

    Returns 202 immediately; pages are generated in the background.
    Returns 409 ``SESSION_EXISTS`` if the document already has an active
    session (the detail carries ``active_session_id``).
    """
    try:
        doc_type = request.doc_type
        if doc_type is None:
            doc_type = await classifier.classify(request.document_id)
            logger.info("Classified document %s as %s", request.document_id, doc_type.value)

        result = await manager.start_session(
            document_id=request.document_id,
            page=request.page,
            doc_type=doc_type,
            owner_id=owner_id,
            page_count=request.page_count,
        )
    except AutoExplainError as e:
        raise to_http_exception(e) from e

    return StartSessionResponse(
        session_id=result.session_id,
        window_range=result.window_range,
        doc_type=doc_type,
        poll_interval_seconds=reporter.poll_interval(interactive=True),
    )


@router.get("/session", response_model=SessionSnapshot)
async def get_active_session(
    document_id: str = Query(..., min_length=1),
    owner_id: str = Depends(get_owner_id),
    manager: SessionManager = Depends(get_manager),
    _: bool = Depends(verify_api_key),
) -> SessionSnapshot:
    """Snapshot of the caller's active session for ``document_id`` (404 if none)."""
    snapshot = await manager.get_active_session(document_id, owner_id=owner_id)
    if snapshot is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": f"No active session for document {document_id}"},
        )
    return snapshot


@router.get("/session/{session_id}", response_model=SessionSnapshot)
async def get_session_status(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    manager: SessionManager = Depends(get_manager),
    _: bool = Depends(verify_api_key),
) -> SessionSnapshot:
    """Current snapshot.  Poll until ``state`` is terminal or this returns 404."""
    try:
        return await manager.get_status(session_id, owner_id=owner_id)
    except AutoExplainError as e:
        raise to_http_exception(e) from e


@router.patch("/session/{session_id}", response_model=UpdateWindowResponse)
async def update_session_window(
    session_id: str,
    request: UpdateWindowRequest,
    owner_id: str = Depends(get_owner_id),
    manager: SessionManager = Depends(get_manager),
    _: bool = Depends(verify_api_key),
) -> UpdateWindowResponse:
    """
    Move the window after navigation.

    ``extend`` is upgraded to ``shift`` when the move is a jump; the
    response carries the action actually applied.
    """
    try:
        result = await manager.update_window(
            session_id,
            current_page=request.current_page,
            action=request.action,
            owner_id=owner_id,
        )
    except AutoExplainError as e:
        raise to_http_exception(e) from e

    return UpdateWindowResponse(
        window_range=result.window_range,
        canceled_pages=result.canceled_pages,
        new_pages=result.new_pages,
        action=result.action,
    )


@router.delete("/session/{session_id}", response_model=CancelSessionResponse)
async def cancel_session(
    session_id: str,
    owner_id: str = Depends(get_owner_id),
    manager: SessionManager = Depends(get_manager),
    _: bool = Depends(verify_api_key),
) -> CancelSessionResponse:
    try:
        canceled = await manager.cancel_session(session_id, owner_id=owner_id)
    except AutoExplainError as e:
        raise to_http_exception(e) from e

    if not canceled:
        return CancelSessionResponse(ok=False, message="Session is not active")
    return CancelSessionResponse(ok=True)


@router.get("/session/{session_id}/events")
async def stream_session_events(
    session_id: str,
    interval: Optional[float] = Query(None, gt=0.0, le=60.0),
    owner_id: str = Depends(get_owner_id),
    reporter: ProgressReporter = Depends(get_reporter),
    _: bool = Depends(verify_api_key),
) -> StreamingResponse:
    """
    Server-Sent Events alternative to polling.

    Emits ``snapshot`` events as the session changes, then ``done`` once it
    is terminal.  Each event is JSON:
    ``{"type": "...", "snapshot": {...}, "newly_completed": [...], "timestamp": "..."}``
    """
    if await reporter.snapshot(session_id, owner_id=owner_id) is None:
        raise to_http_exception(SessionNotFoundError(session_id))

    async def _event_generator() -> AsyncGenerator[str, None]:
        async for event in reporter.stream(session_id, owner_id=owner_id, interval=interval):
            yield event.to_sse()

    return StreamingResponse(
        _event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# =============================================================================
# Scheduler
# =============================================================================

@router.get("/scheduler/stats", response_model=SchedulerStats)
async def scheduler_stats(
    scheduler: PageTaskScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_api_key),
) -> SchedulerStats:
    return scheduler.stats()
