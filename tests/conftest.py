"""
Shared fixtures: a temporary SQLite database, local blob storage and an
in-memory stand-in for the Google Drive backup tier.
"""

import base64
import os
from copy import deepcopy
from datetime import date

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("DRIVE_ENABLED", "false")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from facturaflow.domain.errors import PrimaryStorageError, SecondaryStorageError  # noqa: E402
from facturaflow.domain.validation import ValidationPolicy  # noqa: E402
from facturaflow.infrastructure.database import Database, Project  # noqa: E402
from facturaflow.infrastructure.drive import DocumentStore, UploadedDocument  # noqa: E402
from facturaflow.infrastructure.storage import LocalBlobStore, StoredObject  # noqa: E402
from facturaflow.services.ingestion import InvoiceIngestionService  # noqa: E402

RECEIVER_RFC = "BLI180227F23"
ISSUER_RFC = "XAXX010101000"
INVOICE_UUID = "AAAAAAAA-1111-2222-3333-444444444444"
CREDIT_NOTE_UUID = "BBBBBBBB-1111-2222-3333-444444444444"

XML_CONTENT = b'<?xml version="1.0"?><cfdi:Comprobante Total="1000"/>'
PDF_CONTENT = b"%PDF-1.4 test invoice"


def b64(content: bytes) -> str:
    return base64.b64encode(content).decode()


def make_payload(**overrides) -> dict:
    """A valid submission dated today (inside the upload window)."""
    today = date.today()
    payload = {
        "week": today.isocalendar().week,
        "project": "Amazon Norte",
        "issuer": {
            "rfc": ISSUER_RFC,
            "name": "Juan Perez Lopez",
            "regime": "612 - Personas Fisicas con Actividades Empresariales",
            "zipCode": "64000",
        },
        "receiver": {
            "rfc": RECEIVER_RFC,
            "name": "BLI Logistica SA de CV",
            "regime": "601 - General de Ley Personas Morales",
            "zipCode": "06600",
            "cfdiUse": "G03 - Gastos en general",
        },
        "invoice": {
            "uuid": INVOICE_UUID,
            "folio": "1024",
            "series": "A",
            "date": today.isoformat(),
            "certificationDate": f"{today.isoformat()}T10:00:00",
            "satCertNumber": "00001000000504465028",
        },
        "payment": {"method": "PUE", "form": "03 - Transferencia electronica", "conditions": "Contado"},
        "financial": {
            "subtotal": 862.07,
            "totalTax": 137.93,
            "totalAmount": 1000,
            "currency": "MXN",
            "exchangeRate": 1,
        },
        "items": [
            {"description": "Servicio de reparto", "quantity": 1, "unitPrice": 500, "amount": 500},
            {"description": "Kilometraje", "quantity": 2, "unitPrice": 181.035, "amount": 362.07},
        ],
        "contact": {"email": "juan.perez@example.com", "phone": "8112345678"},
        "files": {
            "xml": {"name": "factura.xml", "content": b64(XML_CONTENT), "mimeType": "application/xml"},
            "pdf": {"name": "factura.pdf", "content": b64(PDF_CONTENT), "mimeType": "application/pdf"},
        },
    }
    payload.update(deepcopy(overrides))
    return payload


def make_credit_note(**overrides) -> dict:
    credit_note = {
        "uuid": CREDIT_NOTE_UUID,
        "folio": "NC-1",
        "relatedUuid": INVOICE_UUID,
        "relationType": "01",
        "issuerRfc": ISSUER_RFC,
        "issuerName": "Juan Perez Lopez",
        "subtotal": 68.97,
        "totalTax": 11.03,
        "totalAmount": 80,
        "currency": "MXN",
        "issueDate": date.today().isoformat(),
        "files": {
            "xml": {"content": b64(b"<cfdi:Comprobante TipoDeComprobante='E'/>")},
            "pdf": {"content": b64(b"%PDF-1.4 credit note")},
        },
    }
    credit_note.update(overrides)
    return credit_note


def make_pronto_pago_payload(credit_note: dict | None = None, **overrides) -> dict:
    payload = make_payload(
        paymentProgram={"program": "pronto_pago", "feeRate": 0.08},
        **overrides,
    )
    if credit_note is not None:
        payload["creditNote"] = credit_note
    return payload


class FakeDocumentStore(DocumentStore):
    """
    In-memory document store.

    `fail_finds` makes the next N folder lookups fail; `unreachable` makes
    every call fail.
    """

    name = "fake_drive"

    def __init__(self) -> None:
        self.root_folder_id = "root"
        self.folders: dict[str, tuple[str, str]] = {}
        self.files: dict[str, tuple[str, str, bytes]] = {}
        self.public: set[str] = set()
        self.fail_finds = 0
        self.fail_uploads = False
        self.fail_permissions = False
        self.unreachable = False

    def _guard(self) -> None:
        if self.unreachable:
            raise SecondaryStorageError("Drive unreachable")

    def folder_path(self, folder_id: str) -> str:
        names = []
        while folder_id != self.root_folder_id:
            name, folder_id = self.folders[folder_id]
            names.append(name)
        return "/".join(reversed(names))

    async def find_folder(self, name: str, parent_id: str) -> str | None:
        self._guard()
        if self.fail_finds:
            self.fail_finds -= 1
            raise SecondaryStorageError("Drive folder search timed out")
        for folder_id, (folder_name, parent) in self.folders.items():
            if folder_name == name and parent == parent_id:
                return folder_id
        return None

    async def create_folder(self, name: str, parent_id: str) -> str:
        self._guard()
        folder_id = f"folder-{len(self.folders) + 1}"
        self.folders[folder_id] = (name, parent_id)
        return folder_id

    async def upload_file(self, folder_id, file_name, content, content_type) -> UploadedDocument:
        self._guard()
        if self.fail_uploads:
            raise SecondaryStorageError("Drive upload failed")
        file_id = f"file-{len(self.files) + 1}"
        self.files[file_id] = (folder_id, file_name, content)
        return UploadedDocument(file_id=file_id, web_view_link=f"https://drive.test/{file_id}/view")

    async def grant_public_read(self, file_id: str) -> None:
        self._guard()
        if self.fail_permissions:
            raise SecondaryStorageError("Drive permission grant failed")
        self.public.add(file_id)

    async def check(self) -> bool:
        return not self.unreachable


class FlakyBlobStore(LocalBlobStore):
    """Local store that refuses paths ending in any of `fail_suffixes`."""

    def __init__(self, base_path, fail_suffixes: tuple[str, ...] = ()) -> None:
        super().__init__(base_path)
        self.fail_suffixes = fail_suffixes

    async def put(self, path: str, content: bytes, content_type: str) -> StoredObject:
        if path.endswith(self.fail_suffixes):
            raise PrimaryStorageError(f"Simulated outage for {path}")
        return await super().put(path, content, content_type)


async def count_rows(database: Database, model) -> int:
    async with database.session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def add_project(
    database: Database,
    code: str,
    name: str,
    sort_order: int = 0,
    is_active: bool = True,
) -> str:
    async with database.session() as session:
        project = Project(code=code, name=name, sort_order=sort_order, is_active=is_active)
        session.add(project)
        await session.commit()
        return project.id


@pytest.fixture
def policy() -> ValidationPolicy:
    return ValidationPolicy(expected_receiver_rfc=RECEIVER_RFC)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'facturaflow.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs", public_base_url="https://files.test")


@pytest.fixture
def document_store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def service(database, blob_store, document_store, policy) -> InvoiceIngestionService:
    return InvoiceIngestionService(
        database=database,
        blob_store=blob_store,
        document_store=document_store,
        policy=policy,
        backup_retry_wait=0,
    )
