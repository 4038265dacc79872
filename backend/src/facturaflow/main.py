"""
FastAPI application entry point.

This is the main application that ties together all components:
- API routes for invoice submission and its lookups
- Construction of the database and storage clients (once per process)
- CORS configuration for frontend access
- Error handling and logging
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from facturaflow import __version__
from facturaflow.api.routes import health, invoices
from facturaflow.api.schemas import ErrorCode, ErrorResponse
from facturaflow.config import Settings, get_settings
from facturaflow.domain.errors import (
    DuplicateRecordError,
    EntityResolutionError,
    PayloadValidationError,
    StructuredWriteError,
)
from facturaflow.infrastructure.database import Database
from facturaflow.infrastructure.drive import DocumentStore, GoogleDriveStore
from facturaflow.infrastructure.storage import BlobStore, build_blob_store
from facturaflow.services.ingestion import InvoiceIngestionService

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _error(
    status_code: int,
    error: ErrorCode,
    message: str,
    details: list[str] | None = None,
    data: dict | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, details=details or [], data=data)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def build_document_store(settings: Settings) -> DocumentStore | None:
    """The backup tier is optional; a misconfigured one is disabled, not fatal."""
    if not settings.drive_enabled:
        logger.info("Backup storage disabled")
        return None
    try:
        return GoogleDriveStore.from_settings(settings)
    except ValueError as e:
        logger.error(f"Backup storage disabled: {e}")
        return None


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    blob_store: BlobStore | None = None,
    document_store: DocumentStore | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Collaborators not passed in are built from settings at startup.

    Returns:
        Configured FastAPI instance ready to serve requests.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown tasks:
        - Build database and storage clients
        - Initialize database tables
        - Dispose connections on shutdown
        """
        logger.info(f"Starting FacturaFlow v{__version__}")
        logger.info(f"Debug mode: {settings.debug}")

        app.state.settings = settings
        app.state.database = database or Database(settings.database_url, echo=settings.debug)
        app.state.blob_store = blob_store or build_blob_store(settings)
        app.state.document_store = (
            document_store if document_store is not None else build_document_store(settings)
        )
        app.state.ingestion = InvoiceIngestionService.from_settings(
            settings,
            database=app.state.database,
            blob_store=app.state.blob_store,
            document_store=app.state.document_store,
        )
        logger.info(f"Primary storage: {app.state.blob_store.name}")

        await app.state.database.create_all()

        yield  # Application runs here

        # Shutdown
        logger.info("Shutting down FacturaFlow")
        await app.state.database.dispose()

    app = FastAPI(
        title="FacturaFlow API",
        description=(
            "Invoice ingestion service.\n\n"
            "Registers CFDI invoices and stores their XML/PDF files on a "
            "primary blob store with a best-effort Google Drive backup."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    app.include_router(health.router)
    app.include_router(invoices.router, prefix="/api")

    @app.exception_handler(PayloadValidationError)
    async def validation_error_handler(request: Request, exc: PayloadValidationError):
        return _error(400, ErrorCode.VALIDATION_ERROR, "Invalid data", exc.errors)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        return _error(400, ErrorCode.VALIDATION_ERROR, "Invalid data", details)

    @app.exception_handler(DuplicateRecordError)
    async def duplicate_handler(request: Request, exc: DuplicateRecordError):
        return _error(
            409,
            ErrorCode.DUPLICATE_INVOICE,
            "This invoice was already registered",
            data={"existingInvoiceId": exc.existing_invoice_id},
        )

    @app.exception_handler(EntityResolutionError)
    @app.exception_handler(StructuredWriteError)
    async def write_error_handler(request: Request, exc: Exception):
        logger.exception(f"Structured write failed: {exc}")
        return _error(
            500,
            ErrorCode.INTERNAL_ERROR,
            "Invoice could not be registered",
            [str(exc)],
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler for unhandled errors."""
        logger.exception(f"Unhandled error: {exc}")

        # Don't expose internal errors in production
        detail = str(exc) if settings.debug else "An internal error occurred"
        return _error(500, ErrorCode.INTERNAL_ERROR, "Internal server error", [detail])

    return app


# Create the application instance
app = create_app()


# Development server entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "facturaflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
