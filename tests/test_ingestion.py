"""End-to-end tests for the ingestion pipeline against a temporary SQLite database."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from conftest import (
    CREDIT_NOTE_UUID,
    INVOICE_UUID,
    ISSUER_RFC,
    PDF_CONTENT,
    XML_CONTENT,
    FlakyBlobStore,
    add_project,
    count_rows,
    make_credit_note,
    make_payload,
    make_pronto_pago_payload,
)
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from facturaflow.domain.errors import (
    DuplicateRecordError,
    PayloadValidationError,
    StructuredWriteError,
)
from facturaflow.domain.models import Artifact, FileKind, PaymentProgram
from facturaflow.domain.submission import parse_submission
from facturaflow.infrastructure.database import (
    CreditNote,
    CreditNoteFile,
    FileReference,
    Invoice,
    InvoiceItem,
    Issuer,
)
from facturaflow.services.ingestion import InvoiceIngestionService, artifact_location

OTHER_UUID = "CCCCCCCC-1111-2222-3333-444444444444"


async def fetch_all(database, model, *criteria, order_by=None):
    async with database.session() as session:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        return list((await session.execute(stmt)).scalars())


class TestSubmission:
    @pytest.mark.asyncio
    async def test_registers_invoice(self, service, database, blob_store):
        result = await service.submit(make_payload())

        invoices = await fetch_all(database, Invoice)
        assert len(invoices) == 1
        invoice = invoices[0]
        assert invoice.id == result.invoice_id
        assert invoice.uuid == INVOICE_UUID
        assert invoice.status == "pending_review"
        assert invoice.issuer_regime == "612"
        assert invoice.receiver_regime == "601"
        assert invoice.cfdi_use == "G03"
        assert invoice.payment_form == "03"
        assert invoice.total_amount == Decimal("1000")
        assert invoice.net_payment_amount == Decimal("1000")
        assert invoice.payment_program == "standard"

        assert set(result.files) == {FileKind.XML, FileKind.PDF}
        assert await blob_store.retrieve(result.files[FileKind.XML].storage_path) == XML_CONTENT
        assert await blob_store.retrieve(result.files[FileKind.PDF].storage_path) == PDF_CONTENT

    @pytest.mark.asyncio
    async def test_invalid_payload_writes_nothing(self, service, database, document_store):
        payload = make_payload()
        payload["receiver"]["rfc"] = "XEXX010101000"

        with pytest.raises(PayloadValidationError) as exc_info:
            await service.submit(payload)

        assert exc_info.value.errors == ["Receiver RFC must be BLI180227F23"]
        assert await count_rows(database, Issuer) == 0
        assert await count_rows(database, Invoice) == 0
        assert document_store.folders == {}

    @pytest.mark.asyncio
    async def test_duplicate_returns_original_id(self, service, database, document_store):
        first = await service.submit(make_payload())
        folders_before = dict(document_store.folders)

        with pytest.raises(DuplicateRecordError) as exc_info:
            await service.submit(make_payload())

        assert exc_info.value.existing_invoice_id == first.invoice_id
        assert await count_rows(database, Invoice) == 1
        assert await count_rows(database, FileReference) == 2
        assert document_store.folders == folders_before

    @pytest.mark.asyncio
    async def test_uuid_case_does_not_bypass_duplicate_guard(self, service, database):
        payload = make_payload()
        payload["invoice"]["uuid"] = INVOICE_UUID.lower()
        first = await service.submit(payload)

        with pytest.raises(DuplicateRecordError) as exc_info:
            await service.submit(make_payload())

        assert exc_info.value.existing_invoice_id == first.invoice_id
        assert first.uuid == INVOICE_UUID
        assert (await fetch_all(database, Invoice))[0].uuid == INVOICE_UUID
        assert await service.find_duplicate(INVOICE_UUID.lower()) == first.invoice_id

    @pytest.mark.asyncio
    async def test_line_items_numbered_in_order(self, service, database):
        items = [{"description": f"Concepto {n}", "amount": n} for n in range(1, 6)]

        result = await service.submit(make_payload(items=items))

        rows = await fetch_all(
            database, InvoiceItem, InvoiceItem.invoice_id == result.invoice_id,
            order_by=InvoiceItem.line_number,
        )
        assert [row.line_number for row in rows] == [1, 2, 3, 4, 5]
        assert [row.description for row in rows] == [f"Concepto {n}" for n in range(1, 6)]
        assert rows[0].quantity == Decimal("1")

    @pytest.mark.asyncio
    async def test_empty_item_list(self, service, database):
        result = await service.submit(make_payload(items=[]))

        assert result.invoice_id
        assert await count_rows(database, InvoiceItem) == 0

    @pytest.mark.asyncio
    async def test_missing_item_description_gets_default(self, service, database):
        await service.submit(make_payload(items=[{"amount": 10}]))

        rows = await fetch_all(database, InvoiceItem)
        assert rows[0].description == "Sin descripción"

    @pytest.mark.asyncio
    async def test_warnings_are_returned(self, service):
        payload = make_payload()
        del payload["files"]["pdf"]

        result = await service.submit(payload)

        assert result.warnings == ["PDF file not provided"]
        assert set(result.files) == {FileKind.XML}


class TestEntities:
    @pytest.mark.asyncio
    async def test_issuer_upserted_by_rfc(self, service, database):
        await service.submit(make_payload())
        payload = make_payload(contact={})
        payload["invoice"]["uuid"] = OTHER_UUID
        payload["issuer"]["name"] = "Juan Perez Lopez (actualizado)"

        await service.submit(payload)

        issuers = await fetch_all(database, Issuer)
        assert len(issuers) == 1
        assert issuers[0].rfc == ISSUER_RFC
        assert issuers[0].fiscal_name == "Juan Perez Lopez (actualizado)"
        assert issuers[0].fiscal_regime_code == "612"
        assert issuers[0].email == f"{ISSUER_RFC.lower()}@pendiente.com"

    @pytest.mark.asyncio
    async def test_project_classified(self, service, database):
        await add_project(database, "AMAZON_SUR", "Amazon Sur", sort_order=1)
        project_id = await add_project(database, "AMAZON_NORTE", "Amazon Norte", sort_order=2)

        result = await service.submit(make_payload())

        assert result.project_id == project_id
        assert not result.needs_project_review
        invoice = (await fetch_all(database, Invoice))[0]
        assert invoice.project_id == project_id
        assert invoice.needs_project_review is False

    @pytest.mark.asyncio
    async def test_unknown_project_needs_review(self, service, database):
        await add_project(database, "MERCADO_LIBRE", "Mercado Libre")

        result = await service.submit(make_payload(project="Walmart Centro"))

        assert result.project_id is None
        assert result.needs_project_review
        invoice = (await fetch_all(database, Invoice))[0]
        assert invoice.needs_project_review is True

    @pytest.mark.asyncio
    async def test_inactive_projects_ignored(self, service, database):
        await add_project(database, "AMAZON_NORTE", "Amazon Norte", is_active=False)

        result = await service.submit(make_payload())

        assert result.project_id is None


    @pytest.mark.asyncio
    async def test_project_lookup_failure_leaves_write_transaction_intact(
        self, service, database, monkeypatch
    ):
        sessions = {}
        classify = service.entities.classify_project
        resolve = service.entities.resolve_issuer

        async def recording_classify(session, label):
            sessions["classify"] = session
            return await classify(session, label)

        async def recording_resolve(session, submission):
            sessions["resolve"] = session
            return await resolve(session, submission)

        monkeypatch.setattr(
            "facturaflow.services.entities.list_active_projects",
            AsyncMock(side_effect=OperationalError("SELECT projects", {}, Exception("connection reset"))),
        )
        monkeypatch.setattr(service.entities, "classify_project", recording_classify)
        monkeypatch.setattr(service.entities, "resolve_issuer", recording_resolve)

        result = await service.submit(make_payload())

        assert result.needs_project_review
        assert sessions["classify"] is not sessions["resolve"]
        assert await count_rows(database, Issuer) == 1
        assert await count_rows(database, Invoice) == 1


class TestStructuredWrites:
    @pytest.mark.asyncio
    async def test_write_failure_rolls_back_issuer(self, service, database, document_store):
        service.writer.write = AsyncMock(side_effect=StructuredWriteError("disk full"))

        with pytest.raises(StructuredWriteError):
            await service.submit(make_payload())

        assert await count_rows(database, Issuer) == 0
        assert await count_rows(database, Invoice) == 0
        assert document_store.files == {}

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_reported_as_duplicate(self, service, database):
        first = await service.submit(make_payload())
        real_find = service.find_duplicate
        # the guard misses, as if the first insert landed right after it ran
        service.find_duplicate = AsyncMock(side_effect=[None, await real_find(INVOICE_UUID)])

        with pytest.raises(DuplicateRecordError) as exc_info:
            await service.submit(make_payload())

        assert exc_info.value.existing_invoice_id == first.invoice_id
        assert await count_rows(database, Invoice) == 1


class TestPaymentProgram:
    @pytest.mark.asyncio
    async def test_pronto_pago_terms(self, service, database):
        result = await service.submit(make_pronto_pago_payload())

        assert result.terms.program is PaymentProgram.PRONTO_PAGO
        assert result.terms.fee_amount == Decimal("80.00")
        assert result.terms.net_amount == Decimal("920.00")
        invoice = (await fetch_all(database, Invoice))[0]
        assert invoice.payment_program == "pronto_pago"
        assert invoice.pronto_pago_fee_amount == Decimal("80.00")
        assert invoice.net_payment_amount == Decimal("920.00")

    @pytest.mark.asyncio
    async def test_client_amounts_ignored(self, service):
        payload = make_payload(
            paymentProgram={"program": "pronto_pago", "feeRate": 0.08, "feeAmount": 1, "netAmount": 999}
        )

        result = await service.submit(payload)

        assert result.terms.net_amount == Decimal("920.00")

    @pytest.mark.asyncio
    async def test_configured_rate_used_when_missing(self, database, blob_store, policy):
        service = InvoiceIngestionService(
            database, blob_store, policy=policy, default_fee_rate=Decimal("0.05")
        )

        result = await service.submit(make_payload(paymentProgram={"program": "pronto_pago"}))

        assert result.terms.fee_amount == Decimal("50.00")


class TestPrimaryTier:
    @pytest.mark.asyncio
    async def test_one_reference_per_kind(self, service, database):
        result = await service.submit(make_payload())

        refs = await fetch_all(database, FileReference, FileReference.invoice_id == result.invoice_id)
        assert sorted(ref.kind for ref in refs) == ["pdf", "xml"]

    @pytest.mark.asyncio
    async def test_rerun_overwrites_reference(self, service, database, blob_store):
        payload = make_payload()
        result = await service.submit(payload)
        submission = parse_submission(payload)
        replacement = [Artifact(kind=FileKind.XML, file_name=f"{INVOICE_UUID}.xml", content=b"<v2/>")]

        await service.primary.persist(
            FileReference, result.invoice_id, replacement, artifact_location(submission)
        )

        refs = await fetch_all(database, FileReference, FileReference.invoice_id == result.invoice_id)
        assert len(refs) == 2
        xml_ref = next(ref for ref in refs if ref.kind == "xml")
        assert xml_ref.storage_path == result.files[FileKind.XML].storage_path
        assert await blob_store.retrieve(xml_ref.storage_path) == b"<v2/>"

    @pytest.mark.asyncio
    async def test_failed_artifact_is_absent(self, database, tmp_path, document_store, policy):
        service = InvoiceIngestionService(
            database,
            FlakyBlobStore(tmp_path / "flaky", fail_suffixes=(".pdf",)),
            document_store,
            policy=policy,
            backup_retry_wait=0,
        )

        result = await service.submit(make_payload())

        assert set(result.files) == {FileKind.XML}
        refs = await fetch_all(database, FileReference)
        assert [ref.kind for ref in refs] == ["xml"]
        # the backup still has both, but only the xml reference records it
        assert set(result.backup.files) == {FileKind.XML, FileKind.PDF}
        assert refs[0].backup_file_id == result.backup.files[FileKind.XML].file_id

    @pytest.mark.asyncio
    async def test_primary_outage_still_registers(self, database, tmp_path, policy):
        service = InvoiceIngestionService(
            database,
            FlakyBlobStore(tmp_path / "down", fail_suffixes=(".xml", ".pdf")),
            policy=policy,
        )

        result = await service.submit(make_payload())

        assert result.files == {}
        assert await count_rows(database, Invoice) == 1
        assert await count_rows(database, FileReference) == 0


class TestBackupTier:
    @pytest.mark.asyncio
    async def test_backup_recorded_on_references(self, service, database, document_store):
        result = await service.submit(make_payload())

        today = date.today()
        assert result.backup.folder_path == (
            f"Semana_{today.isocalendar().week:02d}_{today.year}"
            f"/AMAZON_NORTE/{ISSUER_RFC}_Juan_Perez_Lopez"
        )
        refs = await fetch_all(database, FileReference)
        assert all(ref.backup_file_id for ref in refs)
        assert all(ref.backup_url.startswith("https://drive.test/") for ref in refs)

    @pytest.mark.asyncio
    async def test_backup_unreachable_still_succeeds(self, service, database, document_store):
        document_store.unreachable = True

        result = await service.submit(make_payload())

        assert result.backup is None
        assert FileKind.XML in result.files
        refs = await fetch_all(database, FileReference)
        assert len(refs) == 2
        assert all(ref.backup_file_id is None and ref.backup_url is None for ref in refs)

    @pytest.mark.asyncio
    async def test_no_document_store(self, database, blob_store, policy):
        service = InvoiceIngestionService(database, blob_store, None, policy=policy)

        result = await service.submit(make_payload())

        assert result.backup is None
        assert set(result.files) == {FileKind.XML, FileKind.PDF}

    @pytest.mark.asyncio
    async def test_late_invoice_folder(self, service, document_store):
        payload = make_payload(isLate=True, lateReason="wrong_week")

        result = await service.submit(payload)

        assert "/Extemporaneas/" in result.backup.folder_path


class TestCreditNote:
    @pytest.mark.asyncio
    async def test_persisted_next_to_invoice(self, service, database, blob_store, document_store):
        result = await service.submit(make_pronto_pago_payload(make_credit_note()))

        note = result.credit_note
        assert note is not None
        assert note.uuid == CREDIT_NOTE_UUID
        assert set(note.files) == {FileKind.CREDIT_NOTE_XML, FileKind.CREDIT_NOTE_PDF}

        invoice_dir = result.files[FileKind.XML].storage_path.rsplit("/", 1)[0]
        note_xml = note.files[FileKind.CREDIT_NOTE_XML]
        assert note_xml.storage_path == f"{invoice_dir}/{CREDIT_NOTE_UUID}_NC.xml"
        assert note.backup.folder_id == result.backup.folder_id

        rows = await fetch_all(database, CreditNote)
        assert len(rows) == 1
        assert rows[0].invoice_id == result.invoice_id
        assert rows[0].relation_type == "01"
        refs = await fetch_all(database, CreditNoteFile)
        assert sorted(ref.kind for ref in refs) == ["credit_note_pdf", "credit_note_xml"]
        assert all(ref.backup_file_id for ref in refs)

    @pytest.mark.asyncio
    async def test_invalid_credit_note_isolated(self, service, database):
        result = await service.submit(make_pronto_pago_payload(make_credit_note(uuid=INVOICE_UUID)))

        assert result.credit_note is None
        assert await count_rows(database, Invoice) == 1
        assert await count_rows(database, CreditNote) == 0

    @pytest.mark.asyncio
    async def test_malformed_credit_note_isolated(self, service, database):
        result = await service.submit(make_pronto_pago_payload({"uuid": 42}))

        assert result.credit_note is None
        assert await count_rows(database, Invoice) == 1

    @pytest.mark.asyncio
    async def test_credit_note_write_failure_isolated(self, service, database, monkeypatch):
        monkeypatch.setattr(
            "facturaflow.services.credit_notes.add_credit_note",
            AsyncMock(side_effect=RuntimeError("connection reset")),
        )

        result = await service.submit(make_pronto_pago_payload(make_credit_note()))

        assert result.credit_note is None
        assert set(result.files) == {FileKind.XML, FileKind.PDF}

    @pytest.mark.asyncio
    async def test_ignored_for_standard_program(self, service, database):
        result = await service.submit(make_payload(creditNote=make_credit_note()))

        assert result.credit_note is None
        assert await count_rows(database, CreditNote) == 0
