"""
Generation collaborators.

The scheduler never builds prompts or talks to a model itself.  It consumes
two interfaces:

- :class:`PageGenerator` -- ``generate(request) -> GenerationResult`` for one
  page (may fail or time out), plus ``profile_page`` which estimates the
  page's cost for the deadline calculation.
- :class:`DocumentClassifier` -- ``classify(document_id) -> DocType``,
  consulted once when a session starts.

``HttpPageGenerator`` / ``HttpDocumentClassifier`` bind both to a remote
generation service over HTTP.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from backend.services.config import DocType
from backend.services.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    PageGenerationError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

@dataclass
class GenerationRequest:
    """Everything a generator needs for one page."""
    session_id: str
    document_id: str
    page: int
    doc_type: DocType
    task_id: str
    abort: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()


class GenerationResult(BaseModel):
    """Outcome of a successful generation."""

    result_ref: str = Field(
        ..., description="Opaque pointer to the stored explanation"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PageProfile(BaseModel):
    """Cost estimate used to derive a page's deadline."""

    images_count: int = Field(default=0, ge=0)
    estimated_chunks: int = Field(default=1, ge=0)


# =============================================================================
# Interfaces
# =============================================================================

class PageGenerator(ABC):
    """
    Abstract base class for page explanation generators.

    Implementations should raise :class:`PageGenerationError` for page-level
    failures and :class:`StorageUnavailableError` when results cannot be
    stored at all.  ``request.abort`` is set when the page is canceled;
    honouring it is optional.
    """

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Explain one page and return a pointer to the stored result."""

    async def profile_page(self, document_id: str, page: int) -> PageProfile:
        """Estimate the cost of a page.  Default: text only, one chunk."""
        return PageProfile()

    async def aclose(self) -> None:
        """Release any held resources."""


class DocumentClassifier(ABC):
    """Decides which window policy a document gets."""

    @abstractmethod
    async def classify(self, document_id: str) -> DocType:
        """Return the document type."""


class StaticDocumentClassifier(DocumentClassifier):
    """Classifier that always answers the same type."""

    def __init__(self, doc_type: DocType = DocType.OTHER) -> None:
        self._doc_type = doc_type

    async def classify(self, document_id: str) -> DocType:
        return self._doc_type


# =============================================================================
# HTTP Bindings
# =============================================================================

class HttpPageGenerator(PageGenerator):
    """
    Generator backed by a remote generation service.

    Endpoints (relative to ``base_url``):
    - ``POST /generate``                      -> ``{"result_ref": ..., "metadata": {...}}``
    - ``GET  /documents/{id}/pages/{page}/profile`` -> ``{"images_count": .., "estimated_chunks": ..}``

    A ``503`` from ``/generate`` means result storage is down and is
    reported as :class:`StorageUnavailableError`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 330.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        if request.aborted:
            raise PageGenerationError(request.page, "Aborted before dispatch")

        body = {
            "session_id": request.session_id,
            "document_id": request.document_id,
            "page": request.page,
            "doc_type": request.doc_type.value,
            "task_id": request.task_id,
        }
        try:
            resp = await self._client.post("/generate", json=body)
        except httpx.HTTPError as e:
            raise PageGenerationError(
                request.page,
                message=f"Generation service unreachable: {e}",
                original_error=e,
            ) from e

        if resp.status_code == 503:
            raise StorageUnavailableError(
                message=f"Generation service reports storage unavailable: {resp.text[:200]}"
            )
        if resp.status_code >= 400:
            raise PageGenerationError(
                request.page,
                message=f"HTTP {resp.status_code}: {resp.text[:200]}",
                context={"http_status": resp.status_code},
            )
        return GenerationResult.model_validate(resp.json())

    async def profile_page(self, document_id: str, page: int) -> PageProfile:
        try:
            resp = await self._client.get(f"/documents/{document_id}/pages/{page}/profile")
            resp.raise_for_status()
            return PageProfile.model_validate(resp.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Could not profile page %d of %s, using defaults: %s",
                page, document_id, e,
            )
            return PageProfile()

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpDocumentClassifier(DocumentClassifier):
    """Classifier backed by ``GET /documents/{id}/type`` -> ``{"doc_type": "Lecture"}``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def classify(self, document_id: str) -> DocType:
        try:
            resp = await self._client.get(f"/documents/{document_id}/type")
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                service="generation-service",
                message=f"Classification request failed: {e}",
                original_error=e,
            ) from e
        if resp.status_code >= 400:
            raise ExternalServiceError(
                service="generation-service",
                message="Classification request rejected",
                http_status=resp.status_code,
            )
        try:
            return DocType(resp.json()["doc_type"])
        except (KeyError, ValueError) as e:
            raise ExternalServiceError(
                service="generation-service",
                message=f"Unexpected classification payload: {resp.text[:200]}",
                original_error=e,
            ) from e


# =============================================================================
# Factory
# =============================================================================

def create_page_generator() -> PageGenerator:
    """
    Build the generator configured by ``GENERATION_SERVICE_URL`` and
    ``GENERATION_SERVICE_API_KEY``.

    Raises:
        ConfigurationError: If ``GENERATION_SERVICE_URL`` is not set.
    """
    base_url = os.getenv("GENERATION_SERVICE_URL")
    if not base_url:
        raise ConfigurationError(
            message="GENERATION_SERVICE_URL is not set",
            config_key="GENERATION_SERVICE_URL",
        )
    logger.info("Using generation service at %s", base_url)
    return HttpPageGenerator(
        base_url=base_url,
        api_key=os.getenv("GENERATION_SERVICE_API_KEY"),
    )


def create_document_classifier() -> DocumentClassifier:
    """Classifier for ``GENERATION_SERVICE_URL``, or a static ``Other`` classifier."""
    base_url = os.getenv("GENERATION_SERVICE_URL")
    if not base_url:
        return StaticDocumentClassifier()
    headers = {"Accept": "application/json"}
    api_key = os.getenv("GENERATION_SERVICE_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return HttpDocumentClassifier(
        httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=10.0)
    )
