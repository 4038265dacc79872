"""
Submission validation rules for invoice ingestion.

This module contains pure functions that check an inbound payload before any
write happens. No side effects, no I/O - just shape, format and business rules.

Design Decisions:
- Works on the raw JSON mapping so every problem is reported at once,
  instead of stopping at the first schema error
- Errors block the submission; warnings (e.g. missing PDF) are only reported
- The reference date is injectable so the upload-window rule is testable
"""

import math
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Mapping

from .models import LateReason, PaymentMethod, PaymentProgram, ValidationResult
from .submission import decode_base64


# RFC: 3-4 letters, 6-digit date, 3-char homoclave (12 chars moral, 13 physical)
RFC_PATTERN = re.compile(r"^[A-ZÑ&]{3,4}\d{6}[A-Z0-9]{3}$", re.IGNORECASE)

# Folio fiscal: 8-4-4-4-12 hex groups
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PAYMENT_METHODS = {method.value for method in PaymentMethod}
PAYMENT_PROGRAMS = {program.value for program in PaymentProgram}
LATE_REASONS = {reason.value for reason in LateReason}


@dataclass(frozen=True)
class ValidationPolicy:
    """Deployment-specific knobs for validation."""
    expected_receiver_rfc: str
    upload_window_weeks: int = 3
    pronto_pago_enabled: bool = True


def is_valid_rfc(rfc: Any) -> bool:
    return isinstance(rfc, str) and bool(RFC_PATTERN.match(rfc))


def is_valid_uuid(uuid: Any) -> bool:
    return isinstance(uuid, str) and bool(UUID_PATTERN.match(uuid))


def parse_iso_date(value: Any) -> date | None:
    """Return the date for a YYYY-MM-DD string, or None if it is not one."""
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def is_valid_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email))


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or value.strip() == ""


def _week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def check_upload_window(invoice_date: date, today: date, window_weeks: int) -> str | None:
    """
    Check that an invoice belongs to an active upload week.

    Active weeks are the current ISO week and the previous
    `window_weeks - 1` weeks.

    Returns:
        An error message, or None if the date is inside the window
    """
    weeks_ago = (_week_start(today) - _week_start(invoice_date)).days // 7

    if weeks_ago < 0:
        return "Invoice date cannot be in a future week"

    if weeks_ago >= window_weeks:
        invoice_week = invoice_date.isocalendar().week
        return (
            f"Invoice date belongs to week {invoice_week}; only invoices from "
            f"the last {window_weeks} weeks are accepted"
        )

    return None


def _validate_file(files: Mapping[str, Any], key: str, label: str, errors: list[str]) -> bool:
    """Validate one file entry. Returns True if it has content."""
    entry = files.get(key)
    if not isinstance(entry, Mapping) or not entry.get("content"):
        return False

    content = entry["content"]
    if not isinstance(content, str):
        errors.append(f"{label} file content must be a base64 string")
        return True

    try:
        decode_base64(content)
    except ValueError:
        errors.append(f"{label} file content is not valid base64")
    return True


def _validate_payment_program(
    program_data: Any,
    policy: ValidationPolicy,
    errors: list[str],
) -> str | None:
    """Validate the optional payment program. Returns the program code."""
    if program_data is None:
        return None

    if not isinstance(program_data, Mapping):
        errors.append("Payment program must be an object")
        return None

    program = program_data.get("program", PaymentProgram.STANDARD.value)
    if not isinstance(program, str) or program not in PAYMENT_PROGRAMS:
        errors.append(f"Payment program must be one of {sorted(PAYMENT_PROGRAMS)}")
        return None

    if program == PaymentProgram.PRONTO_PAGO.value:
        if not policy.pronto_pago_enabled:
            errors.append("Pronto pago program is not currently available")

        fee_rate = program_data.get("feeRate")
        if fee_rate is not None and (not _is_number(fee_rate) or not 0 <= fee_rate < 1):
            errors.append("Pronto pago fee rate must be a number between 0 and 1")

    return program


def validate_invoice_payload(
    payload: Any,
    policy: ValidationPolicy,
    today: date | None = None,
) -> ValidationResult:
    """
    Validate an invoice submission before anything is written.

    Args:
        payload: Raw JSON body of the submission
        policy: Receiver RFC and other deployment rules
        today: Reference date for the upload-window rule (defaults to today)

    Returns:
        ValidationResult with every error and warning found
    """
    if not isinstance(payload, Mapping):
        return ValidationResult(valid=False, errors=["Payload is required"])

    today = today or date.today()
    errors: list[str] = []
    warnings: list[str] = []

    week = payload.get("week")
    if not isinstance(week, int) or isinstance(week, bool) or not 1 <= week <= 53:
        errors.append("Week must be a number between 1 and 53")

    if _is_blank(payload.get("project")):
        errors.append("Project is required")

    # Issuer
    issuer = payload.get("issuer")
    if not isinstance(issuer, Mapping):
        errors.append("Issuer data is required")
    else:
        if not issuer.get("rfc"):
            errors.append("Issuer RFC is required")
        elif not is_valid_rfc(issuer["rfc"]):
            errors.append("Issuer RFC has an invalid format")

        if _is_blank(issuer.get("name")):
            errors.append("Issuer name is required")

    # Receiver (single tenant: must be the configured company)
    receiver = payload.get("receiver")
    if not isinstance(receiver, Mapping):
        errors.append("Receiver data is required")
    else:
        if not receiver.get("rfc"):
            errors.append("Receiver RFC is required")
        elif not is_valid_rfc(receiver["rfc"]):
            errors.append("Receiver RFC has an invalid format")
        elif receiver["rfc"].upper() != policy.expected_receiver_rfc.upper():
            errors.append(f"Receiver RFC must be {policy.expected_receiver_rfc}")

    # Invoice identification
    invoice = payload.get("invoice")
    if not isinstance(invoice, Mapping):
        errors.append("Invoice identification data is required")
    else:
        if not invoice.get("uuid"):
            errors.append("UUID (folio fiscal) is required")
        elif not is_valid_uuid(invoice["uuid"]):
            errors.append("UUID has an invalid format")

        if not invoice.get("date"):
            errors.append("Invoice date is required")
        else:
            invoice_date = parse_iso_date(invoice["date"])
            if invoice_date is None:
                errors.append("Invoice date has an invalid format (use YYYY-MM-DD)")
            elif payload.get("isLate"):
                late_reason = payload.get("lateReason")
                if not isinstance(late_reason, str) or late_reason not in LATE_REASONS:
                    errors.append(f"Late invoices require a late reason: {sorted(LATE_REASONS)}")
            elif policy.upload_window_weeks > 0:
                window_error = check_upload_window(
                    invoice_date, today, policy.upload_window_weeks
                )
                if window_error:
                    errors.append(window_error)

    # Payment
    payment = payload.get("payment")
    if not isinstance(payment, Mapping):
        errors.append("Payment data is required")
    elif not payment.get("method"):
        errors.append("Payment method is required")
    elif not isinstance(payment["method"], str) or payment["method"] not in PAYMENT_METHODS:
        errors.append("Payment method must be PUE or PPD")

    # Financial
    financial = payload.get("financial")
    if not isinstance(financial, Mapping):
        errors.append("Financial data is required")
    else:
        total = financial.get("totalAmount")
        if total is None:
            errors.append("Total amount is required")
        elif not _is_number(total) or total <= 0:
            errors.append("Total amount must be a positive number")

        subtotal = financial.get("subtotal")
        if subtotal is not None and not _is_number(subtotal):
            errors.append("Subtotal must be a number")

    # Contact (optional, but must be well formed)
    contact = payload.get("contact")
    if isinstance(contact, Mapping) and contact.get("email") and not is_valid_email(contact["email"]):
        errors.append("Contact email has an invalid format")

    items = payload.get("items")
    if items is not None and not isinstance(items, list):
        errors.append("Items must be a list")

    # Files: XML required, PDF recommended
    files = payload.get("files")
    if not isinstance(files, Mapping):
        errors.append("Files section is required")
    else:
        if not _validate_file(files, "xml", "XML", errors):
            errors.append("XML file is required")
        if not _validate_file(files, "pdf", "PDF", errors):
            warnings.append("PDF file not provided")

    program = _validate_payment_program(payload.get("paymentProgram"), policy, errors)

    credit_note = payload.get("creditNote")
    if program == PaymentProgram.PRONTO_PAGO.value and not credit_note:
        warnings.append("Pronto pago invoice submitted without a credit note")
    elif credit_note and program != PaymentProgram.PRONTO_PAGO.value:
        warnings.append("Credit note ignored: only pronto pago invoices carry one")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_uuid_request(body: Any) -> ValidationResult:
    """Validate a standalone UUID lookup request."""
    errors: list[str] = []

    if not isinstance(body, Mapping) or not body.get("uuid"):
        errors.append("UUID is required")
    elif not is_valid_uuid(body["uuid"]):
        errors.append("UUID has an invalid format")

    return ValidationResult(valid=not errors, errors=errors)


def validate_credit_note(credit_note: Any, invoice_uuid: str) -> ValidationResult:
    """
    Validate a credit note attached to a pronto pago invoice.

    Runs inside the credit-note sub-pipeline, so failures never affect the
    parent invoice.
    """
    if not isinstance(credit_note, Mapping):
        return ValidationResult(valid=False, errors=["Credit note must be an object"])

    errors: list[str] = []
    warnings: list[str] = []

    if not is_valid_uuid(credit_note.get("uuid")):
        errors.append("Credit note UUID is missing or invalid")
    elif credit_note["uuid"].lower() == invoice_uuid.lower():
        errors.append("Credit note UUID must differ from the invoice UUID")

    related = credit_note.get("relatedUuid")
    if related and (not isinstance(related, str) or related.lower() != invoice_uuid.lower()):
        errors.append("Credit note must be related to the submitted invoice")

    if not is_valid_rfc(credit_note.get("issuerRfc")):
        errors.append("Credit note issuer RFC is missing or invalid")

    total = credit_note.get("totalAmount")
    if not _is_number(total) or total <= 0:
        errors.append("Credit note total amount must be a positive number")

    if parse_iso_date(credit_note.get("issueDate")) is None:
        errors.append("Credit note issue date has an invalid format (use YYYY-MM-DD)")

    files = credit_note.get("files")
    if not isinstance(files, Mapping) or not _validate_file(files, "xml", "Credit note XML", errors):
        warnings.append("Credit note XML file not provided")
    if isinstance(files, Mapping):
        _validate_file(files, "pdf", "Credit note PDF", errors)

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
