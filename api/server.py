"""FastAPI server for the billing core.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import health, invoices, leases, payments
from api.services.documents import DocumentService
from core import __version__
from core.errors import BillingError
from core.observability.logging import configure_from_settings, get_logger
from reconciliation.engine import ReconciliationEngine
from storage.db import LedgerStore


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    app.state.store.init_db()
    logger.info(f"Billing API starting up (db: {app.state.store.db_path})")

    yield

    # Shutdown
    logger.info("Billing API shutting down")


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render any billing core error as {error, message, retry_safe, details}."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.http_status} {exc.code}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(store: Optional[LedgerStore] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Ledger store to serve; defaults to the configured database
    """
    configure_from_settings()

    app = FastAPI(
        title="Property Billing API",
        description="Document numbering and payment reconciliation for property billing",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = store or LedgerStore()
    engine = ReconciliationEngine(store)
    app.state.store = store
    app.state.engine = engine
    app.state.documents = DocumentService(engine)

    app.add_exception_handler(BillingError, billing_error_handler)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])
    app.include_router(leases.router, tags=["Leases"])
    app.include_router(payments.router, prefix="/payments", tags=["Payments"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
