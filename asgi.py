"""
asgi.py -- Application assembly for folio auth.

The ASGI entry point servers import. api/main.py owns the app object and its
wiring; this module only re-exports it so deployment config never has to
know the package layout.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
