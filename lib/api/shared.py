"""
Shared dependencies for FastAPI routers.

This module contains:
- Authentication and caller identity dependencies
- Service dependencies (session manager, scheduler, reporter, classifier)
- Request/Response models (Pydantic schemas)
- Translation of service errors into HTTP errors
"""

import os
import secrets
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from backend.services.config import DocType
from backend.services.exceptions import AutoExplainError
from backend.services.generation import DocumentClassifier, create_document_classifier
from backend.services.page_scheduler import PageTaskScheduler, get_page_scheduler
from backend.services.progress import ProgressReporter
from backend.services.session_manager import (
    DEFAULT_OWNER_ID,
    SessionManager,
    get_session_manager,
)
from backend.services.session_models import WindowAction, WindowRange

logger = logging.getLogger(__name__)

# =============================================================================
# Authentication
# =============================================================================

# API key header scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Depends(api_key_header)) -> bool:
    """
    Verify the API key from the X-API-Key header.

    The check is skipped when ``AGENT_API_KEY`` is not configured (local
    development).  Uses constant-time comparison to prevent timing attacks.

    Raises:
        HTTPException: 401 if API key is missing or invalid
    """
    expected = os.getenv("AGENT_API_KEY", "")
    if not expected:
        return True

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Include X-API-Key header."
        )

    if not secrets.compare_digest(api_key, expected):
        logger.warning("Invalid API key attempt")
        raise HTTPException(
            status_code=401,
            detail="Invalid API key"
        )

    return True


async def get_owner_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """Caller identity.  Authentication happens upstream; we only scope by it."""
    return x_user_id or DEFAULT_OWNER_ID


# =============================================================================
# Service Dependencies
# =============================================================================

def get_manager() -> SessionManager:
    return get_session_manager()


def get_scheduler() -> PageTaskScheduler:
    try:
        return get_page_scheduler()
    except AutoExplainError as e:
        raise to_http_exception(e) from e


def get_reporter(manager: SessionManager = Depends(get_manager)) -> ProgressReporter:
    return ProgressReporter(manager, manager.settings.polling)


_classifier: Optional[DocumentClassifier] = None


def get_classifier() -> DocumentClassifier:
    global _classifier
    if _classifier is None:
        _classifier = create_document_classifier()
    return _classifier


# =============================================================================
# Error Translation
# =============================================================================

def to_http_exception(error: AutoExplainError) -> HTTPException:
    """Map a service error onto ``HTTPException(status, {code, message, ...})``."""
    detail: Dict[str, Any] = {"code": error.code, "message": error.message}
    if error.context:
        detail["context"] = error.context
    if error.status_code >= 500:
        logger.error("Request failed: %s", error, exc_info=error.original_error is not None)
    return HTTPException(status_code=error.status_code, detail=detail)


# =============================================================================
# Request/Response Models
# =============================================================================


class StartSessionRequest(BaseModel):
    """Request body for POST /api/ai/explain-page/session."""
    document_id: str = Field(..., min_length=1, description="Document to explain")
    page: int = Field(..., ge=1, description="Page the reader is on")
    doc_type: Optional[DocType] = Field(
        None,
        description="Document type; classified by the generation service when omitted"
    )
    page_count: Optional[int] = Field(
        None, ge=1, description="Number of pages, used to clamp the window"
    )


class StartSessionResponse(BaseModel):
    """Response from POST /api/ai/explain-page/session."""
    session_id: str
    window_range: WindowRange
    doc_type: DocType
    poll_interval_seconds: float = Field(
        ..., description="Suggested status polling cadence"
    )


class UpdateWindowRequest(BaseModel):
    """Request body for PATCH /api/ai/explain-page/session/{session_id}."""
    current_page: int = Field(..., ge=1, description="Page the reader moved to")
    action: WindowAction = Field(
        WindowAction.EXTEND,
        description="extend: sequential reading; shift: relocate after a jump"
    )


class UpdateWindowResponse(BaseModel):
    """Response from PATCH /api/ai/explain-page/session/{session_id}."""
    window_range: WindowRange
    canceled_pages: List[int]
    new_pages: List[int]
    action: WindowAction


class CancelSessionResponse(BaseModel):
    """Response from DELETE /api/ai/explain-page/session/{session_id}."""
    ok: bool
    message: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    scheduler_running: bool
    active_sessions: int
    registry_backend: str
    redis_connected: Optional[bool] = None
