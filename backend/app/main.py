"""FastAPI application.

Run with ``uvicorn backend.app.main:app``; scripts and tests build their own
instance with ``backend.app.application.create_app``.
"""

from backend.app.application import create_app

app = create_app()
