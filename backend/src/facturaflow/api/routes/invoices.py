"""
Invoice submission endpoints.

Handles invoice registration, the UUID pre-check, and the catalogue/config
lookups the submission form needs.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, status

from facturaflow.api.dependencies import get_app_settings, get_ingestion_service
from facturaflow.api.schemas import (
    ErrorResponse,
    InvoiceSubmissionResponse,
    ProjectListResponse,
    ProjectResponse,
    PublicConfig,
    PublicConfigResponse,
    ValidateUuidResponse,
    submission_response,
)
from facturaflow.config import Settings
from facturaflow.domain.errors import PayloadValidationError
from facturaflow.domain.validation import validate_uuid_request
from facturaflow.services.ingestion import InvoiceIngestionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["invoices"])

IngestionDep = Annotated[InvoiceIngestionService, Depends(get_ingestion_service)]


@router.post(
    "/invoice",
    response_model=InvoiceSubmissionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid payload"},
        409: {"model": ErrorResponse, "description": "Invoice UUID already registered"},
        500: {"model": ErrorResponse, "description": "Structured write failed"},
    },
)
async def submit_invoice(
    payload: Annotated[dict[str, Any], Body()],
    service: IngestionDep,
) -> InvoiceSubmissionResponse:
    """
    Register an invoice and store its XML/PDF.

    **Process:**
    1. Validate the payload (all errors reported at once)
    2. Reject UUIDs that are already registered
    3. Upsert the issuer, classify the project, write invoice + items
    4. Store files on the primary tier, then back them up (best-effort)
    5. Persist the linked credit note for pronto pago invoices

    The `files` section only lists files that reached primary storage.
    """
    result = await service.submit(payload)
    logger.info(
        f"Invoice {result.uuid} registered: files={sorted(k.value for k in result.files)}, "
        f"backup={'yes' if result.backup else 'no'}"
    )
    return submission_response(result)


@router.post(
    "/validate",
    response_model=ValidateUuidResponse,
    responses={400: {"model": ErrorResponse, "description": "Malformed UUID"}},
)
async def validate_uuid(
    body: Annotated[dict[str, Any], Body()],
    service: IngestionDep,
) -> ValidateUuidResponse:
    """Check whether a UUID is already registered. Read-only."""
    check = validate_uuid_request(body)
    if not check.valid:
        raise PayloadValidationError(check.errors)

    existing_id = await service.find_duplicate(body["uuid"])
    return ValidateUuidResponse(
        exists=existing_id is not None,
        message=(
            "This invoice is already registered"
            if existing_id
            else "UUID available for registration"
        ),
        existing_invoice_id=existing_id,
    )


@router.get("/projects", response_model=ProjectListResponse)
async def list_projects(service: IngestionDep) -> ProjectListResponse:
    """Active projects in display order."""
    projects = [
        ProjectResponse(
            id=p.id,
            code=p.code,
            name=p.name,
            description=p.description,
            sort_order=p.sort_order,
        )
        for p in await service.list_projects()
    ]
    return ProjectListResponse(data=projects, count=len(projects))


@router.get("/config", response_model=PublicConfigResponse)
async def public_config(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> PublicConfigResponse:
    """Configuration the submission form needs (pronto pago availability)."""
    return PublicConfigResponse(
        data=PublicConfig(
            pronto_pago_enabled=settings.pronto_pago_enabled,
            pronto_pago_fee_rate=settings.pronto_pago_fee_rate,
        )
    )
