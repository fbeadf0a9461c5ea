"""
Auto-Explain HTTP Client
========================

Reader-side counterpart of the session API.

- :class:`AutoExplainClient` wraps the HTTP endpoints with httpx and turns
  error responses back into the service's exception types.
- :class:`ReaderSession` wires a :class:`WindowTracker` to a session: raw
  page observations are debounced and forwarded as ``extend`` (sequential
  reading) or ``shift`` (jump) window updates.

Usage::

    async with AutoExplainClient("http://localhost:8001", owner_id="user-1") as client:
        reader = ReaderSession(client, document_id="doc-42", page_count=120)
        await reader.open(page=10)
        reader.on_page_view(11)
        reader.on_page_view(12)
        final = await reader.wait_until_done()
        await reader.close(cancel=False)
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from backend.services.config import DocType, PollingConfig, TrackerConfig
from backend.services.exceptions import (
    ExternalServiceError,
    SessionExistsError,
    SessionNotActiveError,
    SessionNotFoundError,
    ValidationError,
)
from backend.services.progress import should_stop_polling
from backend.services.session_models import (
    SessionSnapshot,
    SessionState,
    StartSessionResult,
    WindowAction,
    WindowUpdateResult,
)
from backend.services.window_tracker import WindowTracker

logger = logging.getLogger(__name__)


SESSION_PATH = "/api/ai/explain-page/session"
SERVICE_NAME = "auto-explain-api"


def _error_detail(resp: httpx.Response) -> Dict[str, Any]:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return {"message": resp.text[:200]}
    if isinstance(detail, dict):
        return detail
    return {"message": str(detail)}


class AutoExplainClient:
    """
    Async client for ``/api/ai/explain-page``.

    Args:
        base_url: API root, e.g. ``http://localhost:8001``.
        api_key: Sent as ``X-API-Key`` when given.
        owner_id: Sent as ``X-User-Id`` when given.
        polling: Poll cadence used by :meth:`poll_until_terminal`.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one with a mock transport).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8001",
        api_key: Optional[str] = None,
        owner_id: Optional[str] = None,
        polling: Optional[PollingConfig] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        if owner_id:
            headers["X-User-Id"] = owner_id
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )
        self._polling = polling or PollingConfig()

    async def __aenter__(self) -> "AutoExplainClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # Endpoints
    # =========================================================================

    async def start_session(
        self,
        document_id: str,
        page: int,
        doc_type: Optional[DocType] = None,
        page_count: Optional[int] = None,
    ) -> StartSessionResult:
        body: Dict[str, Any] = {"document_id": document_id, "page": page}
        if doc_type is not None:
            body["doc_type"] = DocType(doc_type).value
        if page_count is not None:
            body["page_count"] = page_count

        resp = await self._request("POST", SESSION_PATH, json=body)
        if resp.status_code == 409:
            detail = _error_detail(resp)
            raise SessionExistsError(
                document_id,
                active_session_id=detail.get("context", {}).get("active_session_id"),
            )
        self._raise_for_status(resp, session_id=None)
        return StartSessionResult.model_validate(resp.json())

    async def get_status(self, session_id: str) -> SessionSnapshot:
        resp = await self._request("GET", f"{SESSION_PATH}/{session_id}")
        self._raise_for_status(resp, session_id)
        return SessionSnapshot.model_validate(resp.json())

    async def update_window(
        self,
        session_id: str,
        current_page: int,
        action: WindowAction = WindowAction.EXTEND,
    ) -> WindowUpdateResult:
        resp = await self._request(
            "PATCH",
            f"{SESSION_PATH}/{session_id}",
            json={"current_page": current_page, "action": WindowAction(action).value},
        )
        self._raise_for_status(resp, session_id)
        return WindowUpdateResult.model_validate(resp.json())

    async def cancel_session(self, session_id: str) -> bool:
        resp = await self._request("DELETE", f"{SESSION_PATH}/{session_id}")
        self._raise_for_status(resp, session_id)
        return bool(resp.json().get("ok"))

    async def poll_until_terminal(
        self,
        session_id: str,
        interval: Optional[float] = None,
        on_snapshot: Optional[Callable[[SessionSnapshot], Any]] = None,
        max_polls: Optional[int] = None,
    ) -> Optional[SessionSnapshot]:
        """
        Poll the status endpoint until the session is terminal or gone.

        Returns the final snapshot, or ``None`` if the session was not found
        (or ``max_polls`` ran out before a terminal state).
        """
        interval = interval if interval is not None else self._polling.client_interval_seconds
        polls = 0
        while True:
            try:
                snapshot: Optional[SessionSnapshot] = await self.get_status(session_id)
            except SessionNotFoundError:
                snapshot = None

            if snapshot is not None and on_snapshot is not None:
                on_snapshot(snapshot)
            if should_stop_polling(snapshot):
                return snapshot

            polls += 1
            if max_polls is not None and polls >= max_polls:
                logger.info("Gave up polling session %s after %d polls", session_id, polls)
                return None
            await asyncio.sleep(interval)

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                service=SERVICE_NAME,
                message=f"{method} {url} failed: {e}",
                original_error=e,
            ) from e

    @staticmethod
    def _raise_for_status(resp: httpx.Response, session_id: Optional[str]) -> None:
        if resp.status_code < 400:
            return
        detail = _error_detail(resp)
        code = detail.get("code")
        if resp.status_code == 404 and session_id is not None:
            raise SessionNotFoundError(session_id)
        if code == "SESSION_NOT_ACTIVE" and session_id is not None:
            state = detail.get("context", {}).get("state", "unknown")
            raise SessionNotActiveError(session_id, state)
        if resp.status_code == 422:
            raise ValidationError(message=str(detail.get("message", detail)))
        raise ExternalServiceError(
            service=SERVICE_NAME,
            message=str(detail.get("message", "request failed")),
            http_status=resp.status_code,
        )


class ReaderSession:
    """
    One reader's view of one document.

    Opens (or attaches to) the document's session, debounces page views and
    sends window updates.  A jump reported by the tracker becomes ``shift``;
    sequential reading becomes ``extend``.
    """

    def __init__(
        self,
        client: AutoExplainClient,
        document_id: str,
        doc_type: Optional[DocType] = None,
        page_count: Optional[int] = None,
        tracker_config: Optional[TrackerConfig] = None,
    ) -> None:
        self._client = client
        self.document_id = document_id
        self.doc_type = doc_type
        self.page_count = page_count
        self._tracker_config = tracker_config or TrackerConfig()
        self._tracker: Optional[WindowTracker] = None
        self.session_id: Optional[str] = None
        self.last_update: Optional[WindowUpdateResult] = None

    @property
    def tracker(self) -> Optional[WindowTracker]:
        return self._tracker

    async def open(self, page: int) -> str:
        """
        Start a session at ``page``; attach to the active one if it exists.

        When attaching, the tracker starts from the session's own current
        page and ``page`` is reported as the reader's first move, so a jump
        away from where the session stands becomes a ``shift``.

        Returns:
            The session id.
        """
        initial_page = page
        try:
            self.session_id = await self._start(page)
        except SessionExistsError as e:
            if not e.active_session_id:
                raise
            logger.info(
                "Attaching to active session %s for document %s",
                e.active_session_id, self.document_id,
            )
            self.session_id = e.active_session_id
            snapshot = await self._client.get_status(self.session_id)
            initial_page = snapshot.current_page

        self._tracker = WindowTracker(
            self._on_page_change, self._tracker_config, initial_page=initial_page
        )
        if initial_page != page:
            self._tracker.track_page(page)
        return self.session_id

    def on_page_view(self, page: int) -> None:
        """Feed a raw page observation (e.g. from a scroll handler)."""
        if self._tracker is None:
            raise RuntimeError("ReaderSession.open() must be called first")
        self._tracker.track_page(page)

    async def wait_until_done(self, **kwargs) -> Optional[SessionSnapshot]:
        return await self._client.poll_until_terminal(self.session_id, **kwargs)

    async def close(self, cancel: bool = True) -> bool:
        """Stop tracking; optionally cancel the session.  Returns the cancel outcome."""
        if self._tracker is not None:
            await self._tracker.aclose()
        if not cancel or self.session_id is None:
            return False
        try:
            return await self._client.cancel_session(self.session_id)
        except SessionNotFoundError:
            return False

    async def _start(self, page: int) -> str:
        result = await self._client.start_session(
            self.document_id, page, doc_type=self.doc_type, page_count=self.page_count
        )
        return result.session_id

    async def _on_page_change(self, page: int, is_jump: bool) -> None:
        action = WindowAction.SHIFT if is_jump else WindowAction.EXTEND
        try:
            self.last_update = await self._client.update_window(self.session_id, page, action)
        except SessionNotActiveError as e:
            if e.state != SessionState.COMPLETED.value:
                self._stop_tracking(e)
                return
            # A completed session cannot move; the reader gets a fresh one here
            previous = self.session_id
            try:
                self.session_id = await self._start(page)
            except SessionExistsError as exists:
                if not exists.active_session_id:
                    raise
                self.session_id = exists.active_session_id
                self.last_update = await self._client.update_window(
                    self.session_id, page, action
                )
            logger.info(
                "Session %s completed; continuing at page %d in session %s",
                previous, page, self.session_id,
            )
        except SessionNotFoundError as e:
            self._stop_tracking(e)

    def _stop_tracking(self, reason: Exception) -> None:
        logger.info("Session %s no longer accepts updates: %s", self.session_id, reason)
        self._tracker.enabled = False
