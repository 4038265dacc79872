"""
Typed view of an invoice submission.

The frontend posts camelCase JSON. The raw payload is first checked by
facturaflow.domain.validation (which reports every problem at once); only a
payload that passed is parsed into these models.
"""

import base64
import binascii
from datetime import date, datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import PayloadValidationError
from .models import Artifact, FileKind, LateReason, PaymentMethod, PaymentProgram
from .paths import artifact_file_name


def decode_base64(content: str) -> bytes:
    """
    Decode a base64 file body, accepting an optional data-URL prefix.
    
    Raises:
        ValueError: If the content is not valid base64
    """
    if content.startswith("data:") and "," in content:
        content = content.split(",", 1)[1]
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 content: {e}") from e


def normalize_uuid(value: str) -> str:
    """Folios fiscales are compared and stored in upper case."""
    return value.strip().upper()


class SubmissionModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class IssuerData(SubmissionModel):
    rfc: str
    name: str
    regime: str | None = None
    zip_code: str | None = None


class ReceiverData(SubmissionModel):
    rfc: str
    name: str | None = None
    regime: str | None = None
    zip_code: str | None = None
    cfdi_use: str | None = None


class InvoiceIdentification(SubmissionModel):
    uuid: str
    folio: str | None = None
    series: str | None = None
    issue_date: date = Field(alias="date")
    certification_date: str | None = None
    sat_cert_number: str | None = None
    
    @field_validator("uuid")
    @classmethod
    def _normalize_uuid(cls, value: str) -> str:
        return normalize_uuid(value)


class PaymentData(SubmissionModel):
    method: PaymentMethod
    form: str | None = None
    conditions: str | None = None


class FinancialData(SubmissionModel):
    subtotal: float | None = None
    total_tax: float | None = None
    retention_iva: float | None = None
    retention_iva_rate: float | None = None
    retention_isr: float | None = None
    retention_isr_rate: float | None = None
    total_amount: float
    currency: str | None = None
    exchange_rate: float | None = None


class InvoiceItem(SubmissionModel):
    description: str | None = None
    quantity: float | None = None
    unit: str | None = None
    unit_price: float | None = None
    amount: float | None = None
    product_key: str | None = None
    tax_object: str | None = None


class ContactData(SubmissionModel):
    email: str | None = None
    phone: str | None = None


class FileData(SubmissionModel):
    name: str | None = None
    content: str | None = None
    mime_type: str | None = None
    
    def decode(self) -> bytes | None:
        """Return the decoded bytes, or None when no content was sent."""
        if not self.content:
            return None
        return decode_base64(self.content)


class FilesData(SubmissionModel):
    xml: FileData | None = None
    pdf: FileData | None = None
    
    def artifacts(
        self,
        uuid: str,
        xml_kind: FileKind = FileKind.XML,
        pdf_kind: FileKind = FileKind.PDF,
    ) -> list[Artifact]:
        """Decoded artifacts in upload order (XML first), skipping empty entries."""
        found = []
        for kind, entry in ((xml_kind, self.xml), (pdf_kind, self.pdf)):
            content = entry.decode() if entry else None
            if content:
                found.append(Artifact(kind=kind, file_name=artifact_file_name(uuid, kind), content=content))
        return found


class PaymentProgramData(SubmissionModel):
    program: PaymentProgram = PaymentProgram.STANDARD
    fee_rate: float | None = None
    # Client-computed amounts are informational; the server derives its own.
    fee_amount: float | None = None
    net_amount: float | None = None


class CreditNotePayload(SubmissionModel):
    """Credit note (CFDI type E) attached to an accelerated-payment invoice."""
    uuid: str
    folio: str | None = None
    series: str | None = None
    related_uuid: str | None = None
    relation_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("relationType", "tipoRelacion", "relation_type"),
    )
    issuer_rfc: str
    issuer_name: str | None = None
    subtotal: float | None = None
    total_tax: float | None = None
    total_amount: float
    currency: str | None = None
    issue_date: date
    certification_date: str | None = None
    files: FilesData = Field(default_factory=FilesData)
    
    @field_validator("uuid", "related_uuid")
    @classmethod
    def _normalize_uuids(cls, value: str | None) -> str | None:
        return normalize_uuid(value) if value else value


class InvoiceSubmission(SubmissionModel):
    """A complete invoice submission."""
    submitted_at: datetime | None = None
    week: int
    year: int | None = None
    project: str
    is_late: bool = False
    late_reason: LateReason | None = None
    late_acknowledged_at: datetime | None = None
    issuer: IssuerData
    receiver: ReceiverData
    invoice: InvoiceIdentification
    payment: PaymentData
    financial: FinancialData
    payment_program: PaymentProgramData | None = None
    items: list[InvoiceItem] = Field(default_factory=list)
    contact: ContactData = Field(default_factory=ContactData)
    files: FilesData
    # Parsed later by the credit-note sub-pipeline so that a malformed credit
    # note cannot fail the parent invoice.
    credit_note: dict[str, Any] | None = None
    
    @field_validator("late_reason", mode="before")
    @classmethod
    def _blank_late_reason(cls, value: Any) -> Any:
        return value or None
    
    @field_validator("contact", "items", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "items" else {}
        return value
    
    @property
    def uuid(self) -> str:
        return self.invoice.uuid
    
    @property
    def invoice_year(self) -> int:
        """Year used for storage paths and folder names."""
        return self.invoice.issue_date.year
    
    @property
    def program(self) -> PaymentProgram:
        if self.payment_program is None:
            return PaymentProgram.STANDARD
        return self.payment_program.program


def parse_submission(payload: dict[str, Any]) -> InvoiceSubmission:
    """
    Parse an already-validated payload into an InvoiceSubmission.
    
    Raises:
        PayloadValidationError: If the payload still does not fit the schema
            (e.g. a non-numeric item quantity)
    """
    try:
        return InvoiceSubmission.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise PayloadValidationError(errors) from e
