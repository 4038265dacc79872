"""
Health check endpoint.

Provides per-service status for monitoring and load balancers.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from facturaflow import __version__
from facturaflow.api.dependencies import get_blob_store, get_database, get_document_store
from facturaflow.api.schemas import (
    HealthResponse,
    HealthServices,
    HealthStatusEnum,
    ServiceStatusEnum,
)
from facturaflow.infrastructure.database import Database
from facturaflow.infrastructure.drive import DocumentStore
from facturaflow.infrastructure.storage import BlobStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

STATUS_CODES = {
    HealthStatusEnum.HEALTHY: 200,
    HealthStatusEnum.DEGRADED: 207,
    HealthStatusEnum.UNHEALTHY: 503,
}


async def _probe(name: str, check) -> ServiceStatusEnum:
    try:
        ok = await check()
    except Exception as e:
        logger.warning(f"Health check for {name} raised: {e}")
        ok = False
    return ServiceStatusEnum.CONNECTED if ok else ServiceStatusEnum.DISCONNECTED


def overall_status(services: HealthServices) -> HealthStatusEnum:
    """
    Without the database nothing can be registered (unhealthy). A storage
    tier being down still lets invoices through (degraded).
    """
    if services.database is not ServiceStatusEnum.CONNECTED:
        return HealthStatusEnum.UNHEALTHY
    if ServiceStatusEnum.DISCONNECTED in (services.primary_storage, services.backup_storage):
        return HealthStatusEnum.DEGRADED
    return HealthStatusEnum.HEALTHY


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={207: {"model": HealthResponse}, 503: {"model": HealthResponse}},
)
async def health_check(
    database: Annotated[Database, Depends(get_database)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
    document_store: Annotated[DocumentStore | None, Depends(get_document_store)],
) -> JSONResponse:
    """
    Check system health.

    Returns 200 when everything is reachable, 207 when a storage tier is
    down, 503 when the database is down.
    """
    services = HealthServices(
        database=await _probe("database", database.ping),
        primary_storage=await _probe(blob_store.name, blob_store.check),
        backup_storage=(
            await _probe(document_store.name, document_store.check)
            if document_store is not None
            else ServiceStatusEnum.DISABLED
        ),
    )
    status = overall_status(services)
    response = HealthResponse(status=status, version=__version__, services=services)

    return JSONResponse(
        status_code=STATUS_CODES[status],
        content=response.model_dump(mode="json", by_alias=True),
    )
