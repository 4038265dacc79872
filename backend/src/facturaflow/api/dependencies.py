"""
FastAPI dependencies.

Collaborators are built once in the application lifespan and kept on
app.state; these helpers hand them to the routes.
"""

from fastapi import Request

from facturaflow.config import Settings
from facturaflow.infrastructure.database import Database
from facturaflow.infrastructure.drive import DocumentStore
from facturaflow.infrastructure.storage import BlobStore
from facturaflow.services.ingestion import InvoiceIngestionService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def get_document_store(request: Request) -> DocumentStore | None:
    return request.app.state.document_store


def get_ingestion_service(request: Request) -> InvoiceIngestionService:
    return request.app.state.ingestion
