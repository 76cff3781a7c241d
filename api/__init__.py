"""API Package.

FastAPI server for the property billing core.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
