"""
API module.
Contains the FastAPI application, routes and the WebSocket stream.
"""

from jobrelay.api.main import create_app, run

__all__ = ["create_app", "run"]
