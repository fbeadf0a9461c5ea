"""
Configuration for the auto-explain window scheduler.

All tunables are read from environment variables and validated by pydantic
models.  The server entry point loads ``.env`` (python-dotenv) before the
first call to :func:`get_settings`, so module import never reads the
environment.

Environment variables:
    WINDOW_PAGES_BEFORE            -- Pages kept behind the reader (default: 2)
    WINDOW_PAGES_AFTER             -- Pages prepared ahead of the reader (default: 5)
    SLIDES_WINDOW_PAGES_BEFORE     -- Same, for slide decks (default: 0)
    SLIDES_WINDOW_PAGES_AFTER      -- Same, for slide decks (default: 1)
    WINDOW_JUMP_THRESHOLD          -- Page delta above which a move is a jump (default: 10)
    TRACKER_DEBOUNCE_SECONDS       -- Window tracker quiet period (default: 0.3)
    SCHEDULER_MAX_CONCURRENCY      -- Generations running at once, all sessions (default: 3)
    GENERATION_BASE_SECONDS        -- Deadline base (default: 60)
    GENERATION_SECONDS_PER_IMAGE   -- Deadline increment per image (default: 25)
    GENERATION_SECONDS_PER_CHUNK   -- Deadline increment per text chunk (default: 15)
    GENERATION_MAX_SECONDS         -- Deadline ceiling (default: 300)
    STATUS_POLL_INTERVAL_SECONDS   -- Status display refresh (default: 5)
    CLIENT_POLL_INTERVAL_SECONDS   -- Interactive client refresh (default: 2)
    SESSION_TTL_SECONDS            -- Retention of terminal sessions (default: 3600)
    SESSION_IDLE_COMPLETE_SECONDS  -- Quiet period before a finished window completes (default: 30)
    SESSION_REGISTRY_BACKEND       -- ``memory`` or ``redis`` (default: memory)
    SESSION_REGISTRY_LEASE_SECONDS -- Expiry of a Redis registry claim (default: 900)
"""

import logging
import os
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from backend.services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================

class DocType(str, Enum):
    """Document types that drive the window size."""
    LECTURE = "Lecture"
    HOMEWORK = "Homework"
    EXAM = "Exam"
    OTHER = "Other"
    SLIDES = "Slides"


class RegistryBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


# =============================================================================
# Pydantic Config Models
# =============================================================================

class WindowSize(BaseModel):
    """Pages kept on each side of the current page."""

    before: int = Field(default=2, ge=0, le=50)
    after: int = Field(default=5, ge=0, le=50)


class WindowPolicy(BaseModel):
    """Window sizing per document type plus the jump threshold."""

    default: WindowSize = Field(default_factory=WindowSize)
    overrides: Dict[DocType, WindowSize] = Field(
        default_factory=lambda: {DocType.SLIDES: WindowSize(before=0, after=1)},
        description="Per doc-type sizes; types not listed use ``default``",
    )
    jump_threshold: int = Field(
        default=10,
        ge=1,
        description="A move is a jump when |delta| is strictly greater than this",
    )

    def size_for(self, doc_type: DocType) -> WindowSize:
        return self.overrides.get(doc_type, self.default)


class TrackerConfig(BaseModel):
    """Configuration for the window tracker debounce."""

    debounce_seconds: float = Field(
        default=0.3,
        gt=0.0,
        le=10.0,
        description="Quiet period before a tracked page is reported",
    )
    jump_threshold: int = Field(default=10, ge=1)
    enabled: bool = Field(default=True)


class DeadlinePolicy(BaseModel):
    """Per-page deadline: base + images * per_image + chunks * per_chunk, capped."""

    base_seconds: float = Field(default=60.0, gt=0.0)
    seconds_per_image: float = Field(default=25.0, ge=0.0)
    seconds_per_chunk: float = Field(default=15.0, ge=0.0)
    max_seconds: float = Field(default=300.0, gt=0.0)


class SchedulerConfig(BaseModel):
    """Configuration for the shared page worker pool."""

    max_concurrency: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Generations running at once across every session",
    )
    deadline: DeadlinePolicy = Field(default_factory=DeadlinePolicy)


class PollingConfig(BaseModel):
    """Polling cadence advertised to clients."""

    status_interval_seconds: float = Field(default=5.0, gt=0.0)
    client_interval_seconds: float = Field(default=2.0, gt=0.0)


class Settings(BaseModel):
    """Top-level settings bundle."""

    window: WindowPolicy = Field(default_factory=WindowPolicy)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    session_ttl_seconds: float = Field(default=3600.0, ge=0.0)
    completion_idle_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Quiet period after the last window update before a finished window completes the session",
    )
    registry_backend: RegistryBackend = Field(default=RegistryBackend.MEMORY)
    registry_lease_seconds: int = Field(default=900, ge=1)
    redis_url: str = Field(default="redis://localhost:6379/0")


# =============================================================================
# Deadline Calculation
# =============================================================================

def calculate_deadline_seconds(
    images_count: int = 0,
    estimated_chunks: int = 1,
    policy: Optional[DeadlinePolicy] = None,
) -> float:
    """
    Calculate the generation deadline for one page.

    Formula: base + images * per_image + chunks * per_chunk, capped at
    ``max_seconds``.  Monotonic in both inputs.

    Args:
        images_count: Number of images on the page.
        estimated_chunks: Estimated number of text chunks.
        policy: Deadline constants (defaults used when omitted).

    Returns:
        Deadline in seconds.
    """
    policy = policy or DeadlinePolicy()
    calculated = (
        policy.base_seconds
        + max(0, images_count) * policy.seconds_per_image
        + max(0, estimated_chunks) * policy.seconds_per_chunk
    )
    return min(policy.max_seconds, calculated)


# =============================================================================
# Environment Loading
# =============================================================================

def _env_number(name: str, default: str, cast=float):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            message=f"Invalid value for {name}: {raw!r}",
            config_key=name,
            original_error=e,
        ) from e


def load_settings_from_env() -> Settings:
    """
    Build :class:`Settings` from environment variables.

    Raises:
        ConfigurationError: If a variable cannot be parsed or is out of range.
    """
    try:
        jump_threshold = _env_number("WINDOW_JUMP_THRESHOLD", "10", int)
        settings = Settings(
            window=WindowPolicy(
                default=WindowSize(
                    before=_env_number("WINDOW_PAGES_BEFORE", "2", int),
                    after=_env_number("WINDOW_PAGES_AFTER", "5", int),
                ),
                overrides={
                    DocType.SLIDES: WindowSize(
                        before=_env_number("SLIDES_WINDOW_PAGES_BEFORE", "0", int),
                        after=_env_number("SLIDES_WINDOW_PAGES_AFTER", "1", int),
                    ),
                },
                jump_threshold=jump_threshold,
            ),
            tracker=TrackerConfig(
                debounce_seconds=_env_number("TRACKER_DEBOUNCE_SECONDS", "0.3"),
                jump_threshold=jump_threshold,
            ),
            scheduler=SchedulerConfig(
                max_concurrency=_env_number("SCHEDULER_MAX_CONCURRENCY", "3", int),
                deadline=DeadlinePolicy(
                    base_seconds=_env_number("GENERATION_BASE_SECONDS", "60"),
                    seconds_per_image=_env_number("GENERATION_SECONDS_PER_IMAGE", "25"),
                    seconds_per_chunk=_env_number("GENERATION_SECONDS_PER_CHUNK", "15"),
                    max_seconds=_env_number("GENERATION_MAX_SECONDS", "300"),
                ),
            ),
            polling=PollingConfig(
                status_interval_seconds=_env_number("STATUS_POLL_INTERVAL_SECONDS", "5"),
                client_interval_seconds=_env_number("CLIENT_POLL_INTERVAL_SECONDS", "2"),
            ),
            session_ttl_seconds=_env_number("SESSION_TTL_SECONDS", "3600"),
            completion_idle_seconds=_env_number("SESSION_IDLE_COMPLETE_SECONDS", "30"),
            registry_backend=os.getenv("SESSION_REGISTRY_BACKEND", "memory").lower(),
            registry_lease_seconds=_env_number("SESSION_REGISTRY_LEASE_SECONDS", "900", int),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        )
    except PydanticValidationError as e:
        raise ConfigurationError(
            message=f"Invalid auto-explain configuration: {e.errors()[0]['msg']}",
            original_error=e,
        ) from e

    logger.debug(
        "Loaded settings: window=%s/%s concurrency=%d registry=%s",
        settings.window.default.before,
        settings.window.default.after,
        settings.scheduler.max_concurrency,
        settings.registry_backend.value,
    )
    return settings


# =============================================================================
# Singleton
# =============================================================================

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the settings singleton."""
    global _settings
    if _settings is None:
        _settings = load_settings_from_env()
    return _settings


def reset_settings() -> None:
    """Reset the singleton (useful in tests)."""
    global _settings
    _settings = None
