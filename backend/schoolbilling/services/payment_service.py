# Overview: Payment application engine; the only writer of invoice balances.

"""
Payment Application Service

WHY: Manual payments recorded by staff and card payments reconciled from the
payment processor both end up here. This is the only code path that moves
amount_paid_cents or moves an invoice into PARTIALLY_PAID/PAID.

DESIGN PRINCIPLES:
- Payments are an append-only ledger (never updated or deleted)
- Split payments: one invoice can have many payments
- No over-payment: amount paid may exceed total by at most one cent
- Read balance, validate, insert payment, update invoice: one atomic unit
  under a row lock, retried on concurrent-write conflicts
"""

from __future__ import annotations

from datetime import datetime

from ..errors import InvalidStateError, OverpaymentError, ValidationError
from ..extensions import db
from ..models import Invoice, Payment
from schoolbilling.time_utils import to_naive_utc, utcnow
from .concurrency import run_with_retry
from .invoice_lifecycle import (
    ROUNDING_TOLERANCE_CENTS,
    STATUS_PAID,
    TERMINAL_STATUSES,
    payment_status_for,
    require_transition,
)
from .notification_service import Notifier, build_payment_received_event, dispatch_notification
from .tenant_service import TenantScope


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "CASH"
METHOD_BANK_TRANSFER = "BANK_TRANSFER"
METHOD_GATEWAY = "GATEWAY"
METHOD_OTHER = "OTHER"

VALID_PAYMENT_METHODS = [
    METHOD_CASH,
    METHOD_BANK_TRANSFER,
    METHOD_GATEWAY,
    METHOD_OTHER,
]

# Gateway payments only arrive through webhook reconciliation
MANUAL_PAYMENT_METHODS = [METHOD_CASH, METHOD_BANK_TRANSFER, METHOD_OTHER]


def _require_positive_cents(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("Payment amount must be an integer number of cents")
    if amount_cents <= 0:
        raise ValidationError("Payment amount must be positive")
    return amount_cents


# =============================================================================
# PAYMENT APPLICATION
# =============================================================================

def apply_payment(
    scope: TenantScope,
    invoice_id: int,
    amount_cents: int,
    method: str,
    *,
    reference: str | None = None,
    notes: str | None = None,
    gateway_charge_id: str | None = None,
    paid_at: datetime | None = None,
) -> Payment:
    """
    Apply a payment to an invoice.

    Locks the invoice row, checks the balance, inserts the payment and
    updates amount_paid_cents/status in a single transaction. Either both
    writes commit or neither does.

    Args:
        scope: Caller's tenant scope
        invoice_id: Invoice being paid
        amount_cents: Amount paid (in cents, > 0)
        method: CASH, BANK_TRANSFER, GATEWAY, OTHER
        reference: Bank reference, receipt number, checkout session id (optional)
        notes: Free-text note (optional)
        gateway_charge_id: Processor charge id; unique across all payments (optional)
        paid_at: When the money was received (defaults to now)

    Returns:
        Payment record

    Raises:
        ValidationError: amount not a positive integer, or unknown method
        NotFoundError: invoice absent or owned by another school
        InvalidStateError: invoice CANCELLED or REFUNDED
        OverpaymentError: payment would exceed total by more than one cent
    """
    amount_cents = _require_positive_cents(amount_cents)
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {method}. Must be one of {VALID_PAYMENT_METHODS}")
    received_at = to_naive_utc(paid_at) or utcnow()

    def _op():
        invoice = scope.get(Invoice, invoice_id, lock=True)

        if invoice.status in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Cannot add payments to {invoice.status.lower()} invoices",
                details={"status": invoice.status},
            )

        current_paid = invoice.amount_paid_cents
        new_paid = current_paid + amount_cents
        if new_paid > invoice.total_cents + ROUNDING_TOLERANCE_CENTS:
            raise OverpaymentError(
                "Payment amount exceeds remaining balance",
                details={
                    "amount_cents": amount_cents,
                    "remaining_cents": invoice.total_cents - current_paid,
                },
            )

        new_status = payment_status_for(new_paid, invoice.total_cents)
        require_transition(invoice, new_status)

        payment = Payment(
            invoice_id=invoice.id,
            amount_cents=amount_cents,
            method=method,
            reference=reference,
            notes=notes,
            gateway_charge_id=gateway_charge_id,
            paid_at=received_at,
        )
        db.session.add(payment)

        invoice.amount_paid_cents = new_paid
        invoice.status = new_status
        if new_status == STATUS_PAID:
            invoice.paid_at = utcnow()

        db.session.commit()
        return payment

    return run_with_retry(_op)


def record_manual_payment(
    scope: TenantScope,
    invoice_id: int,
    amount_cents: int,
    method: str,
    *,
    reference: str | None = None,
    notes: str | None = None,
    notifier: Notifier | None = None,
) -> Payment:
    """
    Record a payment taken by staff (cash, bank transfer, other) and send
    the family a receipt.

    The receipt is best-effort; a delivery failure never undoes the payment.
    """
    if method not in MANUAL_PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid manual payment method: {method}. Must be one of {MANUAL_PAYMENT_METHODS}"
        )

    payment = apply_payment(
        scope,
        invoice_id,
        amount_cents,
        method,
        reference=reference,
        notes=notes,
    )
    dispatch_notification(notifier, build_payment_received_event, payment)
    return payment


# =============================================================================
# QUERIES
# =============================================================================

def get_invoice_payments(scope: TenantScope, invoice_id: int) -> list[Payment]:
    """Payments for an invoice, most recent first."""
    scope.get(Invoice, invoice_id)
    return (
        scope.query(Payment)
        .filter(Payment.invoice_id == invoice_id)
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .all()
    )


def find_payment_by_charge_id(scope: TenantScope, gateway_charge_id: str) -> Payment | None:
    return scope.query(Payment).filter(Payment.gateway_charge_id == gateway_charge_id).first()


def get_remaining_balance_cents(scope: TenantScope, invoice_id: int) -> int:
    invoice = scope.get(Invoice, invoice_id)
    return max(0, invoice.balance_cents)


def get_payment_summary(scope: TenantScope, invoice_id: int) -> dict:
    """
    Payment summary for an invoice.

    Returns:
        - total_cents, amount_paid_cents, remaining_cents
        - status
        - payments: list of payment records, most recent first
    """
    invoice = scope.get(Invoice, invoice_id)
    payments = get_invoice_payments(scope, invoice_id)
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "total_cents": invoice.total_cents,
        "amount_paid_cents": invoice.amount_paid_cents,
        "remaining_cents": max(0, invoice.balance_cents),
        "status": invoice.status,
        "payments": [p.to_dict() for p in payments],
    }
