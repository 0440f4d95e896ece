# Overview: Outbound notification events for invoice and payment activity.

"""
Notification Boundary

WHY: Sending an invoice and receiving a payment both notify the family.
Delivery and retry belong to the notification collaborator; this module
only builds the event and hands it over. A delivery failure is logged and
never rolls back the financial write that preceded it.

Notifiers are passed in explicitly by the caller; there is no module-level
client.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from flask import current_app

from ..models import Invoice, Payment


KIND_INVOICE_SENT = "INVOICE_SENT"
KIND_PAYMENT_RECEIVED = "PAYMENT_RECEIVED"


@dataclass(frozen=True)
class NotificationEvent:
    kind: str
    school_id: int
    invoice_id: int
    recipients: tuple[str, ...]
    payload: dict = field(default_factory=dict)


class Notifier(ABC):
    """Interface implemented by the notification collaborator."""

    @abstractmethod
    def send(self, event: NotificationEvent) -> None:
        """Deliver one event. May raise; callers treat delivery as best-effort."""


class LoggingNotifier(Notifier):
    """Default notifier: records the event in the application log only."""

    def send(self, event: NotificationEvent) -> None:
        current_app.logger.info(
            "Notification %s for invoice %s to %d recipient(s)",
            event.kind, event.invoice_id, len(event.recipients),
        )


class RecordingNotifier(Notifier):
    """Keeps events in memory; used by tests and dry runs."""

    def __init__(self):
        self.events: list[NotificationEvent] = []

    def send(self, event: NotificationEvent) -> None:
        self.events.append(event)


def format_amount(cents: int) -> str:
    """Format cents as a display amount, e.g. 123456 -> "$1,234.56"."""
    sign = "-" if cents < 0 else ""
    dollars, remainder = divmod(abs(int(cents)), 100)
    return f"{sign}${dollars:,}.{remainder:02d}"


def family_recipients(invoice: Invoice) -> tuple[str, ...]:
    """Contact emails of the invoice family's parents, primary first."""
    parents = sorted(invoice.family.parents, key=lambda p: (not p.is_primary, p.id))
    return tuple(p.contact_email for p in parents if p.contact_email)


def build_invoice_sent_event(invoice: Invoice) -> NotificationEvent:
    return NotificationEvent(
        kind=KIND_INVOICE_SENT,
        school_id=invoice.school_id,
        invoice_id=invoice.id,
        recipients=family_recipients(invoice),
        payload={
            "school_name": invoice.family.school.name,
            "family_name": invoice.family.name,
            "invoice_number": invoice.invoice_number,
            "total": format_amount(invoice.total_cents),
            "due_date": invoice.due_date.date().isoformat(),
            "description": invoice.description or f"Invoice for {invoice.family.name}",
        },
    )


def build_payment_received_event(payment: Payment) -> NotificationEvent:
    invoice = payment.invoice
    return NotificationEvent(
        kind=KIND_PAYMENT_RECEIVED,
        school_id=invoice.school_id,
        invoice_id=invoice.id,
        recipients=family_recipients(invoice),
        payload={
            "school_name": invoice.family.school.name,
            "invoice_number": invoice.invoice_number,
            "amount": format_amount(payment.amount_cents),
            "payment_method": payment.method,
            "reference": payment.reference,
            "remaining_balance": format_amount(max(0, invoice.balance_cents)),
        },
    )


def dispatch_notification(notifier: Notifier | None, build_event: Callable[..., NotificationEvent], *args) -> bool:
    """
    Build an event with build_event(*args) and hand it to the notifier,
    best-effort.

    Returns True if the notifier accepted it. Failures while building or
    delivering are logged and swallowed: the committed invoice/payment
    state is the source of truth.
    """
    notifier = notifier or LoggingNotifier()
    try:
        event = build_event(*args)
    except Exception:
        current_app.logger.exception("Failed to build notification event")
        return False

    if not event.recipients:
        current_app.logger.info(
            "No recipients for %s on invoice %s; skipping notification",
            event.kind, event.invoice_id,
        )
        return False
    try:
        notifier.send(event)
        return True
    except Exception:
        current_app.logger.exception(
            "Failed to deliver %s notification for invoice %s", event.kind, event.invoice_id
        )
        return False
