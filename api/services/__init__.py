"""API Services Package."""

from api.services.documents import DocumentService

__all__ = [
    "DocumentService",
]
