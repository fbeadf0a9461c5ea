"""
Auto-Explain API

HTTP surface of the sliding-window page explanation scheduler.

Usage:
    uvicorn lib.api.server:app --host 0.0.0.0 --port 8001
"""
