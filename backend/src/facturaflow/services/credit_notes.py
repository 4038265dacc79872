"""
Credit-note sub-pipeline for accelerated-payment invoices.

A pronto pago invoice may carry the credit note (CFDI type E) that documents
the fee. It is persisted after the parent invoice with the same two storage
tiers, next to the invoice's files and with an _NC suffix.

Failures stay inside this module: the parent invoice is already committed and
its response is the same whether or not the credit note made it.
"""

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from facturaflow.domain.errors import CreditNoteSubpipelineError
from facturaflow.domain.models import CreditNoteResult, FileKind
from facturaflow.domain.paths import ArtifactLocation
from facturaflow.domain.payment import to_decimal
from facturaflow.domain.submission import CreditNotePayload
from facturaflow.domain.validation import validate_credit_note
from facturaflow.infrastructure.database import CreditNote, CreditNoteFile, Database
from facturaflow.infrastructure.repository import add_credit_note

from .backup import SecondaryBackupPersister
from .primary import PrimaryBlobPersister

logger = logging.getLogger(__name__)


def build_credit_note(invoice_id: str, note: CreditNotePayload) -> CreditNote:
    return CreditNote(
        invoice_id=invoice_id,
        uuid=note.uuid,
        folio=note.folio or None,
        series=note.series or None,
        related_uuid=note.related_uuid or None,
        relation_type=note.relation_type or None,
        issuer_rfc=note.issuer_rfc.strip().upper(),
        issuer_name=note.issuer_name or None,
        subtotal=to_decimal(note.subtotal),
        total_tax=to_decimal(note.total_tax),
        total_amount=to_decimal(note.total_amount),
        currency=note.currency or "MXN",
        issue_date=note.issue_date,
        certification_date=note.certification_date or None,
    )


class CreditNoteSubpipeline:
    """Validates and persists the credit note linked to an invoice."""

    def __init__(
        self,
        database: Database,
        primary: PrimaryBlobPersister,
        backup: SecondaryBackupPersister,
    ) -> None:
        self.database = database
        self.primary = primary
        self.backup = backup

    async def run(
        self,
        payload: dict[str, Any],
        invoice_id: str,
        invoice_uuid: str,
        location: ArtifactLocation,
    ) -> CreditNoteResult | None:
        """
        Persist the credit note. Never raises.

        Returns:
            The persisted credit note, or None if any step before the file
            uploads failed
        """
        try:
            return await self._run(payload, invoice_id, invoice_uuid, location)
        except Exception as e:
            logger.exception(f"Credit note for invoice {invoice_uuid} not persisted: {e}")
            return None

    async def _run(
        self,
        payload: dict[str, Any],
        invoice_id: str,
        invoice_uuid: str,
        location: ArtifactLocation,
    ) -> CreditNoteResult:
        check = validate_credit_note(payload, invoice_uuid)
        for warning in check.warnings:
            logger.warning(f"Credit note for {invoice_uuid}: {warning}")
        if not check.valid:
            raise CreditNoteSubpipelineError("; ".join(check.errors))

        try:
            note = CreditNotePayload.model_validate(payload)
        except PydanticValidationError as e:
            raise CreditNoteSubpipelineError(f"Malformed credit note: {e}") from e

        try:
            async with self.database.session() as session:
                credit_note_id = await add_credit_note(session, build_credit_note(invoice_id, note))
                await session.commit()
        except SQLAlchemyError as e:
            raise CreditNoteSubpipelineError(f"Failed to insert credit note {note.uuid}: {e}") from e

        logger.info(f"Credit note {note.uuid} registered as {credit_note_id} for invoice {invoice_uuid}")

        artifacts = note.files.artifacts(
            note.uuid,
            xml_kind=FileKind.CREDIT_NOTE_XML,
            pdf_kind=FileKind.CREDIT_NOTE_PDF,
        )
        files = await self.primary.persist(CreditNoteFile, credit_note_id, artifacts, location)
        backup = await self.backup.persist(CreditNoteFile, credit_note_id, artifacts, location, files)

        return CreditNoteResult(id=credit_note_id, uuid=note.uuid, files=files, backup=backup)
