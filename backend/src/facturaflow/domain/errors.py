"""
Error taxonomy for the ingestion pipeline.

Only PayloadValidationError and DuplicateRecordError are raised before any
write. Storage and credit-note errors are caught at their own stage boundary
and never reach the HTTP layer.
"""


class IngestionError(Exception):
    """Base class for all pipeline errors."""


class PayloadValidationError(IngestionError):
    """The submission failed shape, format or business-rule validation."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "Invalid payload")
        self.errors = errors


class DuplicateRecordError(IngestionError):
    """An invoice with the same UUID is already registered."""

    def __init__(self, uuid: str, existing_invoice_id: str) -> None:
        super().__init__(f"Invoice {uuid} already registered as {existing_invoice_id}")
        self.uuid = uuid
        self.existing_invoice_id = existing_invoice_id


class EntityResolutionError(IngestionError):
    """Issuer upsert or project lookup failed."""


class StructuredWriteError(IngestionError):
    """Invoice or line-item insert failed."""


class PrimaryStorageError(IngestionError):
    """Upload to the primary blob store failed."""


class SecondaryStorageError(IngestionError):
    """Folder resolution, upload or permission grant on the backup tier failed."""


class CreditNoteSubpipelineError(IngestionError):
    """Persisting the linked credit note failed."""
