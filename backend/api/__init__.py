"""API module for HTTP routes.

This module exposes the FastAPI router for the agent proxy and the handlers
that keep every error body in the OpenAI shape.
"""

from api.errors import configure_exception_handlers
from api.routes import router

__all__ = ["configure_exception_handlers", "router"]
