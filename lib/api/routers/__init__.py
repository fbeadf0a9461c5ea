"""
Router package for FastAPI endpoints.

This package contains modular routers for different API domains:
- explain_session: Sliding-window page explanation sessions and scheduler stats
"""

from .explain_session import router as explain_session_router

__all__ = [
    "explain_session_router",
]
