# Overview: Invoice lifecycle state machine; validates and applies status transitions.

"""
Invoice Lifecycle Service

================================================================================
STATE MACHINE:
    DRAFT -> SENT -> {PARTIALLY_PAID, PAID, OVERDUE} -> {CANCELLED, REFUNDED}

    DRAFT:          Editable and deletable; not visible to the family
    SENT:           Issued to the family; sent_at stamped
    PARTIALLY_PAID: Some payment recorded, balance remaining
    PAID:           amount_paid within one cent of total
    OVERDUE:        SENT and past due_date (set by the overdue sweep)
    CANCELLED:      Terminal; only reachable with zero recorded payments
    REFUNDED:       Terminal; refund execution happens outside this engine
================================================================================

RULES:
1. Only DRAFT invoices may be edited or deleted (and deleted only with no payments)
2. PAID and PARTIALLY_PAID are set only by payment_service.apply_payment
3. OVERDUE is set only from SENT, when due_date < now
4. An invoice with any payment history cannot be cancelled
5. CANCELLED and REFUNDED are explicit; every other status follows from
   amount_paid vs total
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from ..errors import InvalidStateError, ValidationError
from ..extensions import db
from ..models import Invoice, Payment
from schoolbilling.time_utils import utcnow
from .concurrency import run_with_retry
from .notification_service import Notifier, build_invoice_sent_event, dispatch_notification
from .tenant_service import TenantScope


STATUS_DRAFT = "DRAFT"
STATUS_SENT = "SENT"
STATUS_PARTIALLY_PAID = "PARTIALLY_PAID"
STATUS_PAID = "PAID"
STATUS_OVERDUE = "OVERDUE"
STATUS_CANCELLED = "CANCELLED"
STATUS_REFUNDED = "REFUNDED"

VALID_STATUSES = {
    STATUS_DRAFT,
    STATUS_SENT,
    STATUS_PARTIALLY_PAID,
    STATUS_PAID,
    STATUS_OVERDUE,
    STATUS_CANCELLED,
    STATUS_REFUNDED,
}
InvoiceStatus = Literal["DRAFT", "SENT", "PARTIALLY_PAID", "PAID", "OVERDUE", "CANCELLED", "REFUNDED"]

TERMINAL_STATUSES = {STATUS_CANCELLED, STATUS_REFUNDED}
OUTSTANDING_STATUSES = {STATUS_SENT, STATUS_PARTIALLY_PAID, STATUS_OVERDUE}

VALID_TRANSITIONS: dict[str, set[str]] = {
    STATUS_DRAFT: {STATUS_SENT, STATUS_PARTIALLY_PAID, STATUS_PAID, STATUS_CANCELLED},
    STATUS_SENT: {STATUS_PARTIALLY_PAID, STATUS_PAID, STATUS_OVERDUE, STATUS_CANCELLED},
    STATUS_OVERDUE: {STATUS_PARTIALLY_PAID, STATUS_PAID, STATUS_CANCELLED},
    STATUS_PARTIALLY_PAID: {STATUS_PAID, STATUS_CANCELLED, STATUS_REFUNDED},
    STATUS_PAID: {STATUS_REFUNDED},
    STATUS_CANCELLED: set(),
    STATUS_REFUNDED: set(),
}

# One cent: the rounding tolerance applied to every paid-in-full comparison
ROUNDING_TOLERANCE_CENTS = 1


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    """
    Check a transition against the lifecycle table.

    A repeated PARTIALLY_PAID or PAID (another payment inside the one-cent
    tolerance) is a legal no-op; any other same-state transition is not.
    """
    validate_status(from_status)
    validate_status(to_status)

    if from_status == to_status:
        return from_status in (STATUS_PARTIALLY_PAID, STATUS_PAID)

    return to_status in VALID_TRANSITIONS[from_status]


def require_transition(invoice: Invoice, to_status: str) -> None:
    if not can_transition(invoice.status, to_status):
        raise InvalidStateError(
            f"Cannot move invoice {invoice.invoice_number} from {invoice.status} to {to_status}",
            details={"status": invoice.status, "requested": to_status},
        )


def has_payments(invoice: Invoice) -> bool:
    return db.session.query(
        db.session.query(Payment).filter(Payment.invoice_id == invoice.id).exists()
    ).scalar()


def require_editable(invoice: Invoice) -> None:
    """
    Allow edits only on a DRAFT invoice without payment history.

    Raises InvalidStateError otherwise.
    """
    if invoice.status != STATUS_DRAFT:
        raise InvalidStateError(
            "Can only modify draft invoices",
            details={"status": invoice.status},
        )
    if has_payments(invoice):
        raise InvalidStateError("Cannot modify an invoice with payments")


def payment_status_for(amount_paid_cents: int, total_cents: int) -> str:
    """PAID when within one cent of total, otherwise PARTIALLY_PAID."""
    if amount_paid_cents >= total_cents - ROUNDING_TOLERANCE_CENTS:
        return STATUS_PAID
    return STATUS_PARTIALLY_PAID


def send_invoice(scope: TenantScope, invoice_id: int, *, notifier: Notifier | None = None) -> Invoice:
    """
    Issue a DRAFT invoice to the family (DRAFT -> SENT).

    Stamps sent_at, commits, then notifies the family. Notification is
    best-effort and is not retried here.

    Raises:
        NotFoundError: invoice absent or owned by another school
        InvalidStateError: invoice already sent (or otherwise not a draft)
    """
    def _op():
        invoice = scope.get(Invoice, invoice_id, lock=True)
        if invoice.status != STATUS_DRAFT:
            raise InvalidStateError(
                "Invoice has already been sent",
                details={"status": invoice.status},
            )
        require_transition(invoice, STATUS_SENT)

        invoice.status = STATUS_SENT
        invoice.sent_at = utcnow()
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    dispatch_notification(notifier, build_invoice_sent_event, invoice)
    return invoice


def cancel_invoice(scope: TenantScope, invoice_id: int, *, reason: str | None = None) -> Invoice:
    """
    Cancel an invoice that has no payment history.

    The optional reason is appended to the description for the audit trail.
    An invoice with payments must be refunded before it can be cancelled.
    """
    def _op():
        invoice = scope.get(Invoice, invoice_id, lock=True)
        if invoice.status == STATUS_CANCELLED:
            raise InvalidStateError("Invoice is already cancelled")
        if has_payments(invoice) or invoice.amount_paid_cents > 0:
            raise InvalidStateError(
                "Cannot cancel invoice with payments. Issue refunds first.",
                details={"amount_paid_cents": invoice.amount_paid_cents},
            )
        require_transition(invoice, STATUS_CANCELLED)

        invoice.status = STATUS_CANCELLED
        if reason:
            invoice.description = f"{invoice.description or ''}\n\nCancellation reason: {reason}".strip()
        db.session.commit()
        return invoice

    return run_with_retry(_op)


def mark_overdue(invoice: Invoice, now: datetime) -> bool:
    """
    Move a locked SENT invoice past its due date to OVERDUE.

    Returns False (no change) for any other status or a future due date.
    The caller owns the transaction.
    """
    if invoice.status != STATUS_SENT:
        return False
    if invoice.due_date is None or invoice.due_date >= now:
        return False
    require_transition(invoice, STATUS_OVERDUE)
    invoice.status = STATUS_OVERDUE
    return True
