"""
asgi.py -- ASGI entry point for the client portal.

Kept separate from api/main.py so deployment tooling has one stable import
path (asgi:app) regardless of how the API package is organized.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
