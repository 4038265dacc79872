"""HTTP tests for the FastAPI application."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from conftest import (
    INVOICE_UUID,
    FakeDocumentStore,
    add_project,
    make_credit_note,
    make_payload,
    make_pronto_pago_payload,
)
from fastapi.testclient import TestClient

from facturaflow.config import Settings
from facturaflow.domain.errors import StructuredWriteError
from facturaflow.main import create_app


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        storage_path=tmp_path / "blobs",
        storage_public_base_url="https://files.test",
        pronto_pago_fee_rate=0.08,
    )


@pytest.fixture
def fake_drive() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def client(settings, fake_drive):
    with TestClient(create_app(settings, document_store=fake_drive)) as client:
        yield client


class TestSubmitInvoice:
    def test_created(self, client):
        response = client.post("/api/invoice", json=make_payload())

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["uuid"] == INVOICE_UUID
        assert data["invoiceId"]
        assert data["files"]["xml"].startswith("https://files.test/")
        assert data["files"]["xml"].endswith(f"{INVOICE_UUID}.xml")
        assert data["files"]["pdf"].endswith(f"{INVOICE_UUID}.pdf")
        assert data["payment"] == {
            "program": "standard",
            "feeRate": "0",
            "feeAmount": "0.00",
            "netAmount": "1000.00",
        }
        assert data["needsProjectReview"] is True
        assert data["backup"]["files"]["xml"].startswith("https://drive.test/")

    def test_pronto_pago_with_credit_note(self, client):
        response = client.post("/api/invoice", json=make_pronto_pago_payload(make_credit_note()))

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["payment"]["feeAmount"] == "80.00"
        assert data["payment"]["netAmount"] == "920.00"
        assert data["creditNote"]["files"]["xml"].endswith("_NC.xml")

    def test_validation_error(self, client):
        payload = make_payload()
        payload["invoice"]["uuid"] = "not-a-uuid"
        del payload["files"]["xml"]

        response = client.post("/api/invoice", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"] == ["UUID has an invalid format", "XML file is required"]

    def test_non_object_body(self, client):
        response = client.post("/api/invoice", json=[1, 2, 3])

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_non_finite_total(self, client):
        for literal in ("Infinity", "NaN"):
            body = json.dumps(make_pronto_pago_payload()).replace(
                '"totalAmount": 1000', f'"totalAmount": {literal}'
            )

            response = client.post(
                "/api/invoice", content=body, headers={"Content-Type": "application/json"}
            )

            assert response.status_code == 400
            assert response.json()["details"] == ["Total amount must be a positive number"]

    def test_duplicate(self, client):
        first = client.post("/api/invoice", json=make_payload()).json()["data"]

        response = client.post("/api/invoice", json=make_payload())

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "DUPLICATE_INVOICE"
        assert body["data"]["existingInvoiceId"] == first["invoiceId"]

    def test_backup_unreachable_still_created(self, client, fake_drive):
        fake_drive.unreachable = True

        response = client.post("/api/invoice", json=make_payload())

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["files"]["xml"]
        assert data["backup"] is None

    def test_structured_write_failure(self, client):
        client.app.state.ingestion.writer.write = AsyncMock(side_effect=StructuredWriteError("boom"))

        response = client.post("/api/invoice", json=make_payload())

        assert response.status_code == 500
        assert response.json()["error"] == "INTERNAL_ERROR"


class TestValidateUuid:
    def test_available(self, client):
        response = client.post("/api/validate", json={"uuid": INVOICE_UUID})

        assert response.status_code == 200
        assert response.json() == {
            "exists": False,
            "message": "UUID available for registration",
            "existingInvoiceId": None,
        }

    def test_registered(self, client):
        invoice_id = client.post("/api/invoice", json=make_payload()).json()["data"]["invoiceId"]

        body = client.post("/api/validate", json={"uuid": INVOICE_UUID}).json()

        assert body["exists"] is True
        assert body["existingInvoiceId"] == invoice_id

    def test_malformed(self, client):
        response = client.post("/api/validate", json={"uuid": "123"})

        assert response.status_code == 400
        assert response.json()["details"] == ["UUID has an invalid format"]


def test_projects(client):
    database = client.app.state.database
    asyncio.run(add_project(database, "MERCADO_LIBRE", "Mercado Libre", sort_order=2))
    asyncio.run(add_project(database, "AMAZON_NORTE", "Amazon Norte", sort_order=1))
    asyncio.run(add_project(database, "OLD", "Old", is_active=False))

    body = client.get("/api/projects").json()

    assert body["count"] == 2
    assert [p["code"] for p in body["data"]] == ["AMAZON_NORTE", "MERCADO_LIBRE"]
    assert body["data"][0]["sortOrder"] == 1


def test_public_config(client):
    body = client.get("/api/config").json()
    assert body["data"] == {"prontoPagoEnabled": True, "prontoPagoFeeRate": 0.08}


class TestHealth:
    def test_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"] == {
            "database": "connected",
            "primaryStorage": "connected",
            "backupStorage": "connected",
        }

    def test_backup_down_is_degraded(self, client, fake_drive):
        fake_drive.unreachable = True

        response = client.get("/health")

        assert response.status_code == 207
        assert response.json()["status"] == "degraded"
        assert response.json()["services"]["backupStorage"] == "disconnected"

    def test_database_down_is_unhealthy(self, client):
        client.app.state.database.ping = AsyncMock(return_value=False)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_backup_disabled(self, settings):
        with TestClient(create_app(settings)) as client:
            body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["services"]["backupStorage"] == "disabled"
