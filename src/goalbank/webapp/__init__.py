"""goalbank web application package.

``uvicorn goalbank.webapp:app`` serves the API against the database named by
``GOALBANK_DATABASE_URL``.
"""
from __future__ import annotations

from .application import challenge_sweep, create_app, default_service, get_service

app = create_app()

__all__ = ["app", "challenge_sweep", "create_app", "default_service", "get_service"]
