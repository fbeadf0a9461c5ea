"""
Custom Exception Classes for Auto-Explain
==========================================

This module provides a hierarchy of custom exceptions that preserve context
through the error chain. All exceptions support:

1. Error chaining with `raise ... from e`
2. HTTP status code mapping for API responses
3. A stable machine-readable error code (``SESSION_EXISTS``, ``NOT_FOUND``, ...)
4. Error classification for monitoring/alerting

Propagation policy:
- Session conflicts and not-found errors are surfaced directly to the caller.
- Page-level generation failures are recorded on the page task and never
  propagate to the session.
- Scheduler-fatal errors terminate the session (state ``failed``).
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories for error classification and monitoring."""
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    GENERATION = "generation"
    SCHEDULER = "scheduler"
    EXTERNAL_SERVICE = "external_service"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


# =============================================================================
# Base Exception
# =============================================================================

class AutoExplainError(Exception):
    """
    Base exception class for all auto-explain errors.

    Provides:
    - HTTP status code for API responses
    - Error code for clients
    - Error category for monitoring
    - Context dictionary for debugging

    Usage:
        try:
            # some operation
        except SomeError as e:
            raise AutoExplainError(
                message="Failed to process",
                status_code=500,
                category=ErrorCategory.INTERNAL,
                context={"operation": "process"},
            ) from e
    """

    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.category = category
        self.context = context or {}
        self.original_error = original_error

        full_message = message
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            full_message = f"{message} [{context_str}]"

        super().__init__(full_message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "code": self.code,
            "error": self.message,
            "category": self.category.value,
            "status_code": self.status_code,
        }
        if self.context:
            result["context"] = self.context
        if self.original_error:
            result["original_error"] = str(self.original_error)
        return result


# =============================================================================
# Session Errors
# =============================================================================

class SessionExistsError(AutoExplainError):
    """Raised when a document already has an active session (409)."""

    code = "SESSION_EXISTS"

    def __init__(
        self,
        document_id: str,
        active_session_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        context: Dict[str, Any] = {"document_id": document_id}
        if active_session_id:
            context["active_session_id"] = active_session_id

        super().__init__(
            message=f"An active session already exists for document {document_id}",
            status_code=409,
            category=ErrorCategory.CONFLICT,
            context=context,
            original_error=original_error,
        )
        self.document_id = document_id
        self.active_session_id = active_session_id


class SessionNotFoundError(AutoExplainError):
    """Raised for unknown, expired or foreign sessions (404)."""

    code = "NOT_FOUND"

    def __init__(
        self,
        session_id: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Session not found: {session_id}",
            status_code=404,
            category=ErrorCategory.NOT_FOUND,
            context={"session_id": session_id},
            original_error=original_error,
        )
        self.session_id = session_id


class SessionNotActiveError(AutoExplainError):
    """Raised when a mutation targets a session in a terminal state (409)."""

    code = "SESSION_NOT_ACTIVE"

    def __init__(
        self,
        session_id: str,
        state: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message=f"Session is {state}",
            status_code=409,
            category=ErrorCategory.CONFLICT,
            context={"session_id": session_id, "state": state},
            original_error=original_error,
        )
        self.session_id = session_id
        self.state = state


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(AutoExplainError):
    """Raised when input validation fails (422)."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field

        super().__init__(
            message=message,
            status_code=422,
            category=ErrorCategory.VALIDATION,
            context=ctx,
            original_error=original_error,
        )


class InvalidPageError(ValidationError):
    """Raised for non-positive pages or pages past the end of the document."""

    def __init__(
        self,
        page: int,
        page_count: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        context: Dict[str, Any] = {"page": page}
        if page_count is not None:
            context["page_count"] = page_count
            message = f"Page {page} is outside 1..{page_count}"
        else:
            message = f"Page must be a positive integer, got {page}"

        super().__init__(
            message=message,
            field="page",
            context=context,
            original_error=original_error,
        )


class InvalidTransitionError(AutoExplainError):
    """Raised when a page task or session would move backward or leave a terminal state."""

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        entity: str,
        current: str,
        target: str,
    ):
        super().__init__(
            message=f"Illegal {entity} transition {current} -> {target}",
            status_code=409,
            category=ErrorCategory.INTERNAL,
            context={"entity": entity, "current": current, "target": target},
        )


# =============================================================================
# Generation Errors (page-scoped)
# =============================================================================

class PageGenerationError(AutoExplainError):
    """Raised by a generator when a single page cannot be explained."""

    code = "GENERATION_FAILED"

    def __init__(
        self,
        page: int,
        message: str = "Page generation failed",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        ctx["page"] = page

        super().__init__(
            message=message,
            status_code=502,
            category=ErrorCategory.GENERATION,
            context=ctx,
            original_error=original_error,
        )
        self.page = page


class PageTimeoutError(PageGenerationError):
    """Raised when a page generation exceeds its deadline."""

    code = "GENERATION_TIMEOUT"

    def __init__(
        self,
        page: int,
        timeout_seconds: float,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            page=page,
            message=f"Generation timed out after {timeout_seconds:g}s",
            context={"timeout_seconds": timeout_seconds},
            original_error=original_error,
        )
        self.status_code = 504  # Gateway Timeout


# =============================================================================
# Scheduler Errors (session-scoped)
# =============================================================================

class SchedulerFatalError(AutoExplainError):
    """Raised when the scheduler cannot continue a session at all."""

    code = "SCHEDULER_FATAL"

    def __init__(
        self,
        message: str = "Scheduler failure",
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if session_id:
            ctx["session_id"] = session_id

        super().__init__(
            message=message,
            status_code=500,
            category=ErrorCategory.SCHEDULER,
            context=ctx,
            original_error=original_error,
        )


class StorageUnavailableError(SchedulerFatalError):
    """Raised when the storage backing generated results is unreachable."""

    code = "STORAGE_UNAVAILABLE"

    def __init__(
        self,
        message: str = "Result storage unavailable",
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message=message, original_error=original_error)
        self.status_code = 503


# =============================================================================
# External Service Errors
# =============================================================================

class ExternalServiceError(AutoExplainError):
    """Raised when an external service call fails."""

    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(
        self,
        service: str,
        message: str = "External service call failed",
        http_status: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        ctx["service"] = service
        if http_status:
            ctx["http_status"] = http_status

        super().__init__(
            message=f"{service}: {message}",
            status_code=502,  # Bad Gateway
            category=ErrorCategory.EXTERNAL_SERVICE,
            context=ctx,
            original_error=original_error,
        )
        self.http_status = http_status


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(AutoExplainError):
    """Raised when configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str = "Configuration error",
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        ctx = context or {}
        if config_key:
            ctx["config_key"] = config_key

        super().__init__(
            message=message,
            status_code=500,
            category=ErrorCategory.CONFIGURATION,
            context=ctx,
            original_error=original_error,
        )
