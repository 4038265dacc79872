"""
Invoice ingestion orchestrator.

Coordinates the full submission pipeline:
1. Payload validation
2. Duplicate guard (by invoice UUID)
3. Entity resolution (issuer upsert, project classification)
4. Structured write (invoice + line items, one transaction)
5. Primary blob storage (durability tier)
6. Secondary backup storage (best-effort)
7. Credit-note sub-pipeline (pronto pago only, isolated)

Steps 1-4 decide the HTTP outcome. Once step 4 commits, the submission is
accepted; steps 5-7 only change what the response reports.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from facturaflow.config import Settings
from facturaflow.domain.errors import DuplicateRecordError, PayloadValidationError, StructuredWriteError
from facturaflow.domain.matching import ProjectMatcher
from facturaflow.domain.models import IngestionResult, PaymentProgram, ValidationResult
from facturaflow.domain.paths import ArtifactLocation
from facturaflow.domain.payment import derive_payment_terms, to_decimal
from facturaflow.domain.submission import InvoiceSubmission, normalize_uuid, parse_submission
from facturaflow.domain.validation import ValidationPolicy, validate_invoice_payload
from facturaflow.infrastructure.database import Database, FileReference, Project
from facturaflow.infrastructure.drive import DocumentStore
from facturaflow.infrastructure.repository import find_invoice_id_by_uuid, list_active_projects
from facturaflow.infrastructure.storage import BlobStore

from .backup import SecondaryBackupPersister
from .credit_notes import CreditNoteSubpipeline
from .entities import EntityResolver
from .primary import PrimaryBlobPersister
from .writer import InvoiceWriter

logger = logging.getLogger(__name__)


def artifact_location(submission: InvoiceSubmission) -> ArtifactLocation:
    return ArtifactLocation(
        year=submission.invoice_year,
        week=submission.week,
        project=submission.project,
        issuer_rfc=submission.issuer.rfc.strip().upper(),
        issuer_name=submission.issuer.name.strip(),
        is_late=submission.is_late,
    )


class InvoiceIngestionService:
    """
    Runs invoice submissions through the ingestion pipeline.

    Example:
        service = InvoiceIngestionService(
            database=Database(settings.database_url),
            blob_store=LocalBlobStore(Path("./storage")),
            policy=ValidationPolicy(expected_receiver_rfc="BLI180227F23"),
        )

        result = await service.submit(payload)
        print(result.invoice_id, result.files.keys())
    """

    def __init__(
        self,
        database: Database,
        blob_store: BlobStore,
        document_store: DocumentStore | None = None,
        policy: ValidationPolicy | None = None,
        default_fee_rate: Decimal = Decimal("0.08"),
        matcher: ProjectMatcher | None = None,
        backup_retry_attempts: int = 3,
        backup_retry_wait: float = 0.5,
    ) -> None:
        """
        Initialize the ingestion service.

        Args:
            database: Relational store
            blob_store: Primary storage tier
            document_store: Backup tier (disabled if None)
            policy: Validation rules (receiver RFC, upload window, programs)
            default_fee_rate: Pronto pago fee rate when the payload has none
            matcher: Project classifier (substring match if None)
            backup_retry_attempts: Attempts per backup folder lookup/create
            backup_retry_wait: Base wait in seconds between those attempts
        """
        self.database = database
        self.policy = policy or ValidationPolicy(expected_receiver_rfc="BLI180227F23")
        self.default_fee_rate = default_fee_rate
        self.entities = EntityResolver(matcher)
        self.writer = InvoiceWriter()
        self.primary = PrimaryBlobPersister(database, blob_store)
        self.backup = SecondaryBackupPersister(
            database,
            document_store,
            retry_attempts=backup_retry_attempts,
            retry_wait=backup_retry_wait,
        )
        self.credit_notes = CreditNoteSubpipeline(database, self.primary, self.backup)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        blob_store: BlobStore,
        document_store: DocumentStore | None = None,
    ) -> "InvoiceIngestionService":
        return cls(
            database=database,
            blob_store=blob_store,
            document_store=document_store,
            policy=ValidationPolicy(
                expected_receiver_rfc=settings.expected_receiver_rfc,
                upload_window_weeks=settings.upload_window_weeks,
                pronto_pago_enabled=settings.pronto_pago_enabled,
            ),
            default_fee_rate=to_decimal(settings.pronto_pago_fee_rate),
            backup_retry_attempts=settings.drive_retry_attempts,
        )

    def validate(self, payload: Any, today: date | None = None) -> ValidationResult:
        return validate_invoice_payload(payload, self.policy, today=today)

    async def find_duplicate(self, uuid: str) -> str | None:
        """Return the id of an invoice already registered under `uuid`."""
        async with self.database.session() as session:
            return await find_invoice_id_by_uuid(session, normalize_uuid(uuid))

    async def list_projects(self) -> list[Project]:
        async with self.database.session() as session:
            return await list_active_projects(session)

    async def submit(self, payload: Any, today: date | None = None) -> IngestionResult:
        """
        Ingest one invoice submission.

        Args:
            payload: Raw JSON body
            today: Reference date for the upload-window rule

        Returns:
            IngestionResult describing what was committed on each tier

        Raises:
            PayloadValidationError: Nothing was written
            DuplicateRecordError: The UUID is already registered; nothing was written
            EntityResolutionError: Issuer upsert failed; the transaction was rolled back
            StructuredWriteError: Invoice/line-item insert failed; rolled back
        """
        # Step 1: Validate
        validation = self.validate(payload, today=today)
        if not validation.valid:
            logger.info(f"Submission rejected with {len(validation.errors)} validation errors")
            raise PayloadValidationError(validation.errors)

        submission = parse_submission(payload)
        uuid = submission.uuid
        for warning in validation.warnings:
            logger.warning(f"Invoice {uuid}: {warning}")

        # Step 2: Duplicate guard
        existing_id = await self.find_duplicate(uuid)
        if existing_id:
            logger.warning(f"Duplicate invoice {uuid} (existing {existing_id})")
            raise DuplicateRecordError(uuid, existing_id)

        terms = derive_payment_terms(
            to_decimal(submission.financial.total_amount),
            submission.program,
            to_decimal(submission.payment_program.fee_rate)
            if submission.payment_program and submission.payment_program.fee_rate is not None
            else None,
            self.default_fee_rate,
        )

        # Step 3a: Project classification (advisory, read-only). Runs in its own
        # session so a failed lookup cannot abort the write transaction.
        async with self.database.session() as session:
            project = await self.entities.classify_project(session, submission.project)
        project_id = project.id if project else None

        # Steps 3b-4: Issuer upsert and structured write, one transaction
        try:
            async with self.database.session() as session:
                issuer_id = await self.entities.resolve_issuer(session, submission)
                invoice_id = await self.writer.write(session, submission, issuer_id, project_id, terms)
                await session.commit()
        except StructuredWriteError as e:
            if isinstance(e.__cause__, IntegrityError):
                existing_id = await self.find_duplicate(uuid)
                if existing_id:
                    logger.warning(f"Invoice {uuid} registered concurrently as {existing_id}")
                    raise DuplicateRecordError(uuid, existing_id) from e
            raise

        logger.info(f"Invoice {uuid} committed as {invoice_id} ({terms.program.value})")

        # Step 5: Primary tier
        location = artifact_location(submission)
        artifacts = submission.files.artifacts(uuid)
        files = await self.primary.persist(FileReference, invoice_id, artifacts, location)
        missing = [artifact.file_name for artifact in artifacts if artifact.kind not in files]
        if missing:
            logger.error(f"Invoice {uuid} accepted without primary copies of: {', '.join(missing)}")

        # Step 6: Backup tier
        backup = await self.backup.persist(FileReference, invoice_id, artifacts, location, files)

        # Step 7: Credit note
        credit_note = None
        if submission.program is PaymentProgram.PRONTO_PAGO and submission.credit_note:
            credit_note = await self.credit_notes.run(
                submission.credit_note, invoice_id, uuid, location
            )

        return IngestionResult(
            invoice_id=invoice_id,
            uuid=uuid,
            issuer_id=issuer_id,
            project_id=project_id,
            terms=terms,
            files=files,
            backup=backup,
            credit_note=credit_note,
            warnings=validation.warnings,
        )
