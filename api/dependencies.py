"""Request-scoped accessors for the services attached to the app."""

from fastapi import Request

from api.services.documents import DocumentService
from reconciliation.engine import ReconciliationEngine


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_documents(request: Request) -> DocumentService:
    return request.app.state.documents
