"""
Auto-Explain client.

Usage:
    from lib.client import AutoExplainClient, ReaderSession
"""

from .auto_explain import AutoExplainClient, ReaderSession

__all__ = [
    "AutoExplainClient",
    "ReaderSession",
]
