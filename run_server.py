#!/usr/bin/env python3
"""
Start the Auto-Explain API with the project root on the Python path.

Reads API_HOST, PORT / API_PORT and UVICORN_RELOAD from the environment
(or ``.env``) and runs ``lib.api.server:app`` under uvicorn.
"""

import sys
from pathlib import Path

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

if __name__ == "__main__":
    import os

    import uvicorn
    from dotenv import load_dotenv

    load_dotenv(dotenv_path=project_root / ".env", override=True)

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("PORT") or os.getenv("API_PORT", "8001"))
    reload = os.getenv("UVICORN_RELOAD", "false").lower() == "true"

    print(f"Starting Auto-Explain API on {host}:{port} (reload={reload})")

    uvicorn.run(
        "lib.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
