#!/usr/bin/env python3
"""Serve the UniUpdates API with uvicorn.

Usage:
    API_HOST=0.0.0.0 API_PORT=8000 python scripts/run_api.py
"""
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

import uvicorn  # noqa: E402


def main() -> None:
    host = os.environ.get("API_HOST", "0.0.0.0")
    port = int(os.environ.get("API_PORT", "8000"))
    uvicorn.run("uniupdates.app:app", host=host, port=port, proxy_headers=True, reload=False)


if __name__ == "__main__":
    main()
