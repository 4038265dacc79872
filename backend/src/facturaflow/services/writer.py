"""
Structured writes for an accepted invoice: the invoice row and its lines.
"""

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from facturaflow.domain.errors import StructuredWriteError
from facturaflow.domain.models import InvoiceStatus, PaymentTerms
from facturaflow.domain.payment import to_decimal
from facturaflow.domain.submission import InvoiceItem as ItemData
from facturaflow.domain.submission import InvoiceSubmission
from facturaflow.infrastructure.database import Invoice
from facturaflow.infrastructure.repository import add_invoice, add_line_items

from .entities import extract_code

logger = logging.getLogger(__name__)

DEFAULT_ITEM_DESCRIPTION = "Sin descripción"


def build_invoice(
    submission: InvoiceSubmission,
    issuer_id: str,
    project_id: str | None,
    terms: PaymentTerms,
) -> Invoice:
    """Map a submission onto a new invoice row (status pending_review)."""
    issuer = submission.issuer
    receiver = submission.receiver
    invoice = submission.invoice
    financial = submission.financial

    return Invoice(
        issuer_id=issuer_id,
        project_id=project_id,
        uuid=invoice.uuid,
        folio=invoice.folio or None,
        series=invoice.series or None,
        invoice_date=invoice.issue_date,
        certification_date=invoice.certification_date or None,
        sat_cert_number=invoice.sat_cert_number or None,
        issuer_rfc=issuer.rfc.strip().upper(),
        issuer_name=issuer.name.strip(),
        issuer_regime=extract_code(issuer.regime, 10),
        issuer_zip_code=extract_code(issuer.zip_code, 5),
        receiver_rfc=receiver.rfc.strip().upper(),
        receiver_name=receiver.name or None,
        receiver_regime=extract_code(receiver.regime, 10),
        receiver_zip_code=extract_code(receiver.zip_code, 5),
        cfdi_use=extract_code(receiver.cfdi_use, 10),
        payment_method=submission.payment.method.value,
        payment_form=extract_code(submission.payment.form, 10),
        payment_conditions=submission.payment.conditions or None,
        subtotal=to_decimal(financial.subtotal),
        total_tax=to_decimal(financial.total_tax),
        retention_iva=to_decimal(financial.retention_iva),
        retention_iva_rate=to_decimal(financial.retention_iva_rate),
        retention_isr=to_decimal(financial.retention_isr),
        retention_isr_rate=to_decimal(financial.retention_isr_rate),
        total_amount=to_decimal(financial.total_amount),
        currency=financial.currency or "MXN",
        exchange_rate=to_decimal(financial.exchange_rate or None, default="1"),
        payment_week=submission.week,
        payment_year=submission.invoice_year,
        payment_program=terms.program.value,
        pronto_pago_fee_rate=terms.fee_rate,
        pronto_pago_fee_amount=terms.fee_amount,
        net_payment_amount=terms.net_amount,
        is_late=submission.is_late,
        late_reason=submission.late_reason.value if submission.late_reason else None,
        late_acknowledged_at=submission.late_acknowledged_at if submission.is_late else None,
        needs_project_review=project_id is None,
        contact_email=submission.contact.email or None,
        contact_phone=submission.contact.phone or None,
        status=InvoiceStatus.PENDING_REVIEW.value,
    )


def build_line_items(invoice_id: str, items: list[ItemData]) -> list[dict[str, Any]]:
    """Line item rows numbered 1..N in submission order."""
    return [
        {
            "invoice_id": invoice_id,
            "line_number": index + 1,
            "description": item.description or DEFAULT_ITEM_DESCRIPTION,
            "quantity": to_decimal(item.quantity or None, default="1"),
            "unit": item.unit or None,
            "unit_price": to_decimal(item.unit_price),
            "amount": to_decimal(item.amount),
            "product_key": item.product_key or None,
            "tax_object": item.tax_object or None,
        }
        for index, item in enumerate(items)
    ]


class InvoiceWriter:
    """Writes the invoice and its line items into an open transaction."""

    async def write(
        self,
        session: AsyncSession,
        submission: InvoiceSubmission,
        issuer_id: str,
        project_id: str | None,
        terms: PaymentTerms,
    ) -> str:
        """
        Insert the invoice and its line items. Does not commit.

        Returns:
            The new invoice id

        Raises:
            StructuredWriteError: If either insert fails; an IntegrityError on
                the invoice UUID is kept as the cause
        """
        try:
            invoice_id = await add_invoice(
                session, build_invoice(submission, issuer_id, project_id, terms)
            )
            count = await add_line_items(session, build_line_items(invoice_id, submission.items))
        except SQLAlchemyError as e:
            raise StructuredWriteError(f"Failed to write invoice {submission.uuid}: {e}") from e

        logger.info(f"Invoice {submission.uuid} staged as {invoice_id} with {count} line items")
        return invoice_id
