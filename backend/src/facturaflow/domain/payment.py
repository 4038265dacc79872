"""
Payment-program math.

Accelerated payment ("pronto pago") deducts a fee from the face total in
exchange for faster disbursement. The server always derives the amounts
itself; client-supplied fee/net amounts are ignored.
"""

from decimal import ROUND_HALF_UP, Decimal

from .models import PaymentProgram, PaymentTerms

CENT = Decimal("0.01")


def to_decimal(value: float | int | str | Decimal | None, default: str = "0") -> Decimal:
    """Convert a JSON number to Decimal without binary float artifacts."""
    if value is None:
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def derive_payment_terms(
    total_amount: Decimal,
    program: PaymentProgram,
    fee_rate: Decimal | None,
    default_fee_rate: Decimal,
) -> PaymentTerms:
    """
    Compute fee and net amounts for an invoice.
    
    Rules:
        pronto_pago: fee = total * rate, net = total - fee
        standard:    fee = 0, net = total (rounded to cents)
    
    Example:
        >>> derive_payment_terms(Decimal("1000"), PaymentProgram.PRONTO_PAGO, Decimal("0.08"), Decimal("0.08"))
        PaymentTerms(program=<PaymentProgram.PRONTO_PAGO: 'pronto_pago'>, fee_rate=Decimal('0.08'), fee_amount=Decimal('80.00'), net_amount=Decimal('920.00'))
    """
    if program is not PaymentProgram.PRONTO_PAGO:
        return PaymentTerms(
            program=PaymentProgram.STANDARD,
            fee_rate=Decimal("0"),
            fee_amount=Decimal("0.00"),
            net_amount=total_amount.quantize(CENT, rounding=ROUND_HALF_UP),
        )
    
    rate = default_fee_rate if fee_rate is None else fee_rate
    fee_amount = (total_amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    
    return PaymentTerms(
        program=PaymentProgram.PRONTO_PAGO,
        fee_rate=rate,
        fee_amount=fee_amount,
        net_amount=total_amount - fee_amount,
    )
