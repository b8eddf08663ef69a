"""
asgi.py -- ASGI entry point for RotaGuard.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so deployment tooling has one stable import
path regardless of how the api/ package is organized internally.
"""

from api.main import app

__all__ = ["app"]
