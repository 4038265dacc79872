"""
Pydantic schemas for API responses.

These schemas define the contract between frontend and backend. Fields are
serialized in camelCase to match the submission payload.
All monetary values use strings to avoid floating point issues.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from facturaflow.domain.models import (
    BackupResult,
    CreditNoteResult,
    FileKind,
    IngestionResult,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorCode(str, Enum):
    """Machine-readable error codes returned to the frontend."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceStatusEnum(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DISABLED = "disabled"


class HealthStatusEnum(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# =============================================================================
# Submission
# =============================================================================

class FileLinks(ApiModel):
    """Links to the stored XML/PDF. A missing key means it was not stored."""
    xml: str | None = None
    pdf: str | None = None


class BackupResponse(ApiModel):
    folder_path: str
    files: FileLinks


class PaymentTermsResponse(ApiModel):
    program: str
    fee_rate: str
    fee_amount: str
    net_amount: str


class CreditNoteResponse(ApiModel):
    id: str
    uuid: str
    files: FileLinks
    backup: BackupResponse | None = None


class InvoiceSubmissionData(ApiModel):
    invoice_id: str
    uuid: str
    project_id: str | None = None
    needs_project_review: bool
    payment: PaymentTermsResponse
    files: FileLinks
    backup: BackupResponse | None = None
    credit_note: CreditNoteResponse | None = None
    warnings: list[str] = []


class InvoiceSubmissionResponse(ApiModel):
    success: bool = True
    message: str = "Invoice registered"
    data: InvoiceSubmissionData


class ErrorResponse(ApiModel):
    success: bool = False
    error: ErrorCode
    message: str
    details: list[str] = []
    data: dict[str, Any] | None = None


def _file_links(files: dict[FileKind, Any], link: str) -> FileLinks:
    return FileLinks(**{kind.response_key: getattr(f, link) for kind, f in files.items()})


def _backup_response(backup: BackupResult | None) -> BackupResponse | None:
    if backup is None:
        return None
    return BackupResponse(
        folder_path=backup.folder_path,
        files=_file_links(backup.files, "web_view_link"),
    )


def _credit_note_response(credit_note: CreditNoteResult | None) -> CreditNoteResponse | None:
    if credit_note is None:
        return None
    return CreditNoteResponse(
        id=credit_note.id,
        uuid=credit_note.uuid,
        files=_file_links(credit_note.files, "public_url"),
        backup=_backup_response(credit_note.backup),
    )


def submission_response(result: IngestionResult) -> InvoiceSubmissionResponse:
    """Build the 201 body. `files` lists primary-tier links only."""
    return InvoiceSubmissionResponse(
        data=InvoiceSubmissionData(
            invoice_id=result.invoice_id,
            uuid=result.uuid,
            project_id=result.project_id,
            needs_project_review=result.needs_project_review,
            payment=PaymentTermsResponse(
                program=result.terms.program.value,
                fee_rate=str(result.terms.fee_rate),
                fee_amount=str(result.terms.fee_amount),
                net_amount=str(result.terms.net_amount),
            ),
            files=_file_links(result.files, "public_url"),
            backup=_backup_response(result.backup),
            credit_note=_credit_note_response(result.credit_note),
            warnings=result.warnings,
        )
    )


# =============================================================================
# Auxiliary endpoints
# =============================================================================

class ValidateUuidResponse(ApiModel):
    exists: bool
    message: str
    existing_invoice_id: str | None = None


class ProjectResponse(ApiModel):
    id: str
    code: str
    name: str
    description: str | None = None
    sort_order: int = 0


class ProjectListResponse(ApiModel):
    success: bool = True
    data: list[ProjectResponse]
    count: int


class PublicConfig(ApiModel):
    pronto_pago_enabled: bool
    pronto_pago_fee_rate: float


class PublicConfigResponse(ApiModel):
    success: bool = True
    data: PublicConfig


class HealthServices(ApiModel):
    database: ServiceStatusEnum
    primary_storage: ServiceStatusEnum
    backup_storage: ServiceStatusEnum


class HealthResponse(ApiModel):
    """Health check response."""
    status: HealthStatusEnum
    version: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    services: HealthServices
