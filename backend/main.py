"""Deployment entrypoint.

Most Python web start commands default to `uvicorn main:app`.
The Cupid's Arrow FastAPI application lives in `server.py`.

This module provides a stable `main:app` target for deployment.
"""

from server import app  # noqa: F401
