"""
asgi.py -- ASGI entry point for OpsGuard.

Keeps the server command independent of the api/ package layout.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
