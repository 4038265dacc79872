"""
Domain models for invoice ingestion.

These types carry data between pipeline stages. Persistence models live in
facturaflow.infrastructure.database; HTTP schemas in facturaflow.api.schemas.

Design Decisions:
- Enums for every closed set of codes stored in the database
- Dataclasses for stage results so each stage reports what actually persisted
- Decimal for all monetary values to avoid floating-point errors
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class InvoiceStatus(Enum):
    """
    Review status of a registered invoice.
    
    Ingestion only ever assigns PENDING_REVIEW; the remaining values are set
    by the back-office workflow.
    """
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class PaymentProgram(Enum):
    """Payment track chosen by the issuer."""
    STANDARD = "standard"
    PRONTO_PAGO = "pronto_pago"


class PaymentMethod(Enum):
    """SAT payment method codes."""
    PUE = "PUE"  # single payment
    PPD = "PPD"  # deferred / installments


class LateReason(Enum):
    AFTER_DEADLINE = "after_deadline"
    WRONG_WEEK = "wrong_week"


class FileKind(Enum):
    """Kind of binary artifact attached to an invoice or credit note."""
    XML = "xml"
    PDF = "pdf"
    CREDIT_NOTE_XML = "credit_note_xml"
    CREDIT_NOTE_PDF = "credit_note_pdf"
    
    @property
    def extension(self) -> str:
        return "xml" if self in (FileKind.XML, FileKind.CREDIT_NOTE_XML) else "pdf"
    
    @property
    def content_type(self) -> str:
        return "application/xml" if self.extension == "xml" else "application/pdf"
    
    @property
    def response_key(self) -> str:
        """Key used in API responses ("xml" / "pdf")."""
        return self.extension


@dataclass
class ValidationResult:
    """Outcome of payload validation. Warnings never make a payload invalid."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentTerms:
    """Derived payment-program amounts for an invoice."""
    program: PaymentProgram
    fee_rate: Decimal
    fee_amount: Decimal
    net_amount: Decimal


@dataclass(frozen=True)
class Artifact:
    """A decoded binary artifact ready for upload."""
    kind: FileKind
    file_name: str
    content: bytes
    
    @property
    def content_type(self) -> str:
        return self.kind.content_type


@dataclass(frozen=True)
class PersistedFile:
    """An artifact stored on the primary tier and referenced in the database."""
    kind: FileKind
    file_name: str
    storage_path: str
    public_url: str


@dataclass(frozen=True)
class BackupFile:
    """An artifact copied to the backup document store."""
    kind: FileKind
    file_id: str
    web_view_link: str


@dataclass
class BackupResult:
    """Outcome of the backup tier for one document."""
    folder_id: str
    folder_path: str
    files: dict[FileKind, BackupFile] = field(default_factory=dict)


@dataclass
class CreditNoteResult:
    id: str
    uuid: str
    files: dict[FileKind, PersistedFile] = field(default_factory=dict)
    backup: BackupResult | None = None


@dataclass
class IngestionResult:
    """
    Everything the pipeline committed for one submission.
    
    `files` only lists artifacts that reached the primary tier.
    """
    invoice_id: str
    uuid: str
    issuer_id: str
    project_id: str | None
    terms: PaymentTerms
    files: dict[FileKind, PersistedFile] = field(default_factory=dict)
    backup: BackupResult | None = None
    credit_note: CreditNoteResult | None = None
    warnings: list[str] = field(default_factory=list)
    
    @property
    def needs_project_review(self) -> bool:
        return self.project_id is None
