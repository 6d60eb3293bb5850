"""
API module.
Contains FastAPI application, routes, and dependencies.
"""

from pdfqueue.api.main import create_app, run

__all__ = ["create_app", "run"]
