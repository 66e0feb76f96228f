"""
asgi.py -- ASGI entry point for the Validiant auth service.

Kept separate from api/main.py so process managers have one stable import
path no matter how the api/ package is organized.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
