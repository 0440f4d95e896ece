# Overview: Payment processor webhook verification and idempotent reconciliation.

"""
Gateway Reconciliation Service

WHY: The payment processor confirms card payments by webhook. Delivery is
at-least-once and can arrive out of order, so the same charge may be
reported many times. Each real-world charge must produce exactly one
Payment row and one balance update.

FLOW:
1. GatewayClient.verify: check the processor signature before trusting
   any field of the payload
2. parse_gateway_event: turn the raw event into one of CheckoutCompleted,
   PaymentFailed or OtherEvent, once, at the boundary
3. reconcile_gateway_event: resolve school + invoice from the metadata we
   attached at checkout creation, de-duplicate on the charge id, then hand
   off to payment_service.apply_payment

IDEMPOTENCY:
- A Payment with the same gateway_charge_id already exists -> DUPLICATE
- A concurrent delivery that loses the race fails the unique index on
  payments.gateway_charge_id at insert -> DUPLICATE

SECURITY:
- The metadata school is never trusted on its own: the invoice is looked
  up through that school's TenantScope, so an invoice owned by another
  school is indistinguishable from a missing one and the event is rejected
- Rejected events are logged and dropped; the processor redelivers
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Union

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    InvalidStateError,
    NotFoundError,
    OverpaymentError,
    ValidationError,
    WebhookVerificationError,
)
from ..models import Invoice
from .notification_service import Notifier, build_payment_received_event, dispatch_notification
from .payment_service import METHOD_GATEWAY, apply_payment, find_payment_by_charge_id
from .tenant_service import TenantScope, require_active_school


EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHECKOUT_ASYNC_FAILED = "checkout.session.async_payment_failed"
EVENT_PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"

OUTCOME_APPLIED = "APPLIED"
OUTCOME_DUPLICATE = "DUPLICATE"
OUTCOME_REJECTED = "REJECTED"
OUTCOME_IGNORED = "IGNORED"


# =============================================================================
# SIGNATURE VERIFICATION
# =============================================================================

class GatewayClient:
    """Verifies webhook payloads signed by the payment processor."""

    def __init__(self, webhook_secret: str | None, tolerance: int = 300):
        if not webhook_secret:
            raise WebhookVerificationError("Webhook secret not configured")
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    @classmethod
    def from_config(cls) -> "GatewayClient":
        return cls(current_app.config.get("STRIPE_WEBHOOK_SECRET"))

    def verify(self, payload: bytes | str, signature: str | None) -> dict:
        """
        Verify the Stripe-Signature header and return the event as a dict.

        Raises WebhookVerificationError on a bad signature, a stale
        timestamp or an unparseable payload.
        """
        if not signature:
            raise WebhookVerificationError("Missing webhook signature")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as exc:
            current_app.logger.warning("Invalid webhook signature: %s", exc)
            raise WebhookVerificationError("Webhook signature verification failed") from exc
        except ValueError as exc:
            raise WebhookVerificationError("Invalid webhook payload") from exc

        return json.loads(payload)


# =============================================================================
# EVENT PARSING (tagged union)
# =============================================================================

@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str | None
    charge_id: str
    session_id: str | None
    school_id: int | None
    invoice_id: int | None
    amount_cents: int


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str | None
    charge_id: str | None
    reason: str | None


@dataclass(frozen=True)
class OtherEvent:
    event_id: str | None
    event_type: str | None


GatewayEvent = Union[CheckoutCompleted, PaymentFailed, OtherEvent]


def _metadata_int(metadata: dict, key: str) -> int | None:
    value = metadata.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _object_id(value) -> str | None:
    # Expanded objects arrive as dicts
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def parse_gateway_event(raw: dict) -> GatewayEvent:
    """
    Classify a verified processor event.

    Only a checkout session that completed with payment_status "paid" is a
    CheckoutCompleted. The charge id is the payment intent id, falling back
    to the session id when the session has no payment intent.
    """
    event_id = raw.get("id")
    event_type = raw.get("type")
    obj = (raw.get("data") or {}).get("object") or {}

    if event_type == EVENT_CHECKOUT_COMPLETED and obj.get("payment_status") == "paid":
        metadata = obj.get("metadata") or {}
        session_id = obj.get("id")
        return CheckoutCompleted(
            event_id=event_id,
            charge_id=_object_id(obj.get("payment_intent")) or session_id,
            session_id=session_id,
            school_id=_metadata_int(metadata, "schoolId"),
            invoice_id=_metadata_int(metadata, "invoiceId"),
            amount_cents=int(obj.get("amount_total") or 0),
        )

    if event_type == EVENT_PAYMENT_INTENT_FAILED:
        error = obj.get("last_payment_error") or {}
        return PaymentFailed(event_id=event_id, charge_id=obj.get("id"), reason=error.get("message"))

    if event_type == EVENT_CHECKOUT_ASYNC_FAILED:
        return PaymentFailed(
            event_id=event_id,
            charge_id=_object_id(obj.get("payment_intent")) or obj.get("id"),
            reason="Asynchronous payment failed",
        )

    return OtherEvent(event_id=event_id, event_type=event_type)


# =============================================================================
# RECONCILIATION
# =============================================================================

@dataclass(frozen=True)
class ReconciliationResult:
    outcome: str
    charge_id: str | None = None
    payment_id: int | None = None
    invoice_id: int | None = None
    reason: str | None = None

    @property
    def should_acknowledge(self) -> bool:
        """False tells the HTTP layer to answer non-2xx so the processor redelivers."""
        return self.outcome != OUTCOME_REJECTED


def _reject(event: CheckoutCompleted, reason: str) -> ReconciliationResult:
    current_app.logger.warning(
        "Rejected gateway charge %s (school %s, invoice %s): %s",
        event.charge_id, event.school_id, event.invoice_id, reason,
    )
    return ReconciliationResult(
        outcome=OUTCOME_REJECTED,
        charge_id=event.charge_id,
        invoice_id=event.invoice_id,
        reason=reason,
    )


def _duplicate(event: CheckoutCompleted, payment_id: int | None) -> ReconciliationResult:
    current_app.logger.info("Gateway charge %s already processed; skipping", event.charge_id)
    return ReconciliationResult(
        outcome=OUTCOME_DUPLICATE,
        charge_id=event.charge_id,
        payment_id=payment_id,
        invoice_id=event.invoice_id,
    )


def reconcile_gateway_event(event: GatewayEvent, *, notifier: Notifier | None = None) -> ReconciliationResult:
    """
    Apply a verified processor event to local state exactly once.

    Returns a ReconciliationResult with outcome:
        APPLIED: a new gateway payment was recorded
        DUPLICATE: this charge was already recorded; nothing changed
        REJECTED: metadata missing or mismatched, or the payment was refused
        IGNORED: not a completed payment
    """
    if isinstance(event, PaymentFailed):
        current_app.logger.info("Gateway payment failed for charge %s: %s", event.charge_id, event.reason)
        return ReconciliationResult(outcome=OUTCOME_IGNORED, charge_id=event.charge_id, reason=event.reason)

    if not isinstance(event, CheckoutCompleted):
        current_app.logger.info("Unhandled gateway event type: %s", getattr(event, "event_type", None))
        return ReconciliationResult(outcome=OUTCOME_IGNORED, reason="Unhandled event type")

    if not event.charge_id:
        return _reject(event, "Missing charge id")
    if event.school_id is None or event.invoice_id is None:
        return _reject(event, "Missing school or invoice metadata")
    if event.amount_cents <= 0:
        return _reject(event, "Non-positive amount")

    try:
        require_active_school(event.school_id)
    except NotFoundError:
        return _reject(event, "Unknown school")

    scope = TenantScope.for_school(event.school_id)

    existing = find_payment_by_charge_id(scope, event.charge_id)
    if existing is not None:
        return _duplicate(event, existing.id)

    try:
        invoice = scope.get(Invoice, event.invoice_id)
    except NotFoundError:
        return _reject(event, "Invoice not found for school")
    if invoice.school_id != event.school_id:
        return _reject(event, "Invoice school mismatch")

    try:
        payment = apply_payment(
            scope,
            invoice.id,
            event.amount_cents,
            METHOD_GATEWAY,
            reference=event.session_id,
            gateway_charge_id=event.charge_id,
        )
    except IntegrityError:
        # Lost the race to a concurrent delivery of the same charge
        existing = find_payment_by_charge_id(scope, event.charge_id)
        return _duplicate(event, existing.id if existing is not None else None)
    except (OverpaymentError, InvalidStateError, ValidationError) as exc:
        return _reject(event, exc.message)

    current_app.logger.info(
        "Applied gateway charge %s to invoice %s (%s cents)",
        event.charge_id, invoice.id, event.amount_cents,
    )
    dispatch_notification(notifier, build_payment_received_event, payment)

    return ReconciliationResult(
        outcome=OUTCOME_APPLIED,
        charge_id=event.charge_id,
        payment_id=payment.id,
        invoice_id=invoice.id,
    )


def handle_webhook(
    client: GatewayClient,
    payload: bytes | str,
    signature: str | None,
    *,
    notifier: Notifier | None = None,
) -> ReconciliationResult:
    """Verify, parse and reconcile one webhook delivery."""
    raw = client.verify(payload, signature)
    return reconcile_gateway_event(parse_gateway_event(raw), notifier=notifier)
