# Overview: Pytest coverage for webhook verification and gateway reconciliation.

"""
Gateway Reconciliation Tests

SECURITY TESTS: Forged signatures are refused, and metadata naming one
school cannot move money on another school's invoice.

IDEMPOTENCY TESTS: Replaying a delivery any number of times yields one
Payment row and one balance update.
"""

import hashlib
import hmac
import json
import time

import pytest

from schoolbilling.config import TestingConfig
from schoolbilling.errors import WebhookVerificationError
from schoolbilling.models import Invoice, Payment
from schoolbilling.services.gateway_service import (
    OUTCOME_APPLIED,
    OUTCOME_DUPLICATE,
    OUTCOME_IGNORED,
    OUTCOME_REJECTED,
    CheckoutCompleted,
    GatewayClient,
    OtherEvent,
    PaymentFailed,
    handle_webhook,
    parse_gateway_event,
    reconcile_gateway_event,
)
from schoolbilling.services.invoice_lifecycle import STATUS_PAID, STATUS_PARTIALLY_PAID, send_invoice
from schoolbilling.services.notification_service import KIND_PAYMENT_RECEIVED
from schoolbilling.services.payment_service import METHOD_CASH, METHOD_GATEWAY, apply_payment


def _checkout_event(school_id, invoice_id, amount_cents, charge_id="pi_3Ntest001", payment_status="paid"):
    return {
        "id": "evt_1Ntest",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_a1",
                "object": "checkout.session",
                "payment_status": payment_status,
                "payment_intent": charge_id,
                "amount_total": amount_cents,
                "metadata": {"schoolId": str(school_id), "invoiceId": str(invoice_id)},
            }
        },
    }


def _sign(payload: str, secret: str = TestingConfig.STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    mac = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={mac}"


def _sent_invoice(scope, family, make_invoice, total_cents=10000):
    invoice = make_invoice(scope, family, total_cents)
    send_invoice(scope, invoice.id)
    return invoice


class TestParseGatewayEvent:
    def test_paid_checkout_is_completed(self):
        event = parse_gateway_event(_checkout_event(7, 42, 12000))

        assert event == CheckoutCompleted(
            event_id="evt_1Ntest",
            charge_id="pi_3Ntest001",
            session_id="cs_test_a1",
            school_id=7,
            invoice_id=42,
            amount_cents=12000,
        )

    def test_unpaid_checkout_is_other(self):
        event = parse_gateway_event(_checkout_event(7, 42, 12000, payment_status="unpaid"))
        assert isinstance(event, OtherEvent)

    def test_expanded_payment_intent(self):
        raw = _checkout_event(7, 42, 12000)
        raw["data"]["object"]["payment_intent"] = {"id": "pi_expanded", "object": "payment_intent"}

        assert parse_gateway_event(raw).charge_id == "pi_expanded"

    def test_falls_back_to_session_id(self):
        raw = _checkout_event(7, 42, 12000, charge_id=None)
        assert parse_gateway_event(raw).charge_id == "cs_test_a1"

    def test_garbled_metadata_parsed_as_missing(self):
        raw = _checkout_event("abc", None, 12000)
        event = parse_gateway_event(raw)
        assert event.school_id is None
        assert event.invoice_id is None

    def test_payment_failed(self):
        raw = {
            "id": "evt_f",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_f", "last_payment_error": {"message": "Card declined"}}},
        }
        assert parse_gateway_event(raw) == PaymentFailed(event_id="evt_f", charge_id="pi_f", reason="Card declined")

    def test_unknown_type(self):
        event = parse_gateway_event({"id": "evt_x", "type": "customer.created", "data": {"object": {}}})
        assert event == OtherEvent(event_id="evt_x", event_type="customer.created")


class TestReconcileGatewayEvent:
    def test_completed_checkout_applies_payment(self, db_session, scope_a, school_a, family_a, make_invoice, notifier):
        invoice = _sent_invoice(scope_a, family_a, make_invoice, 10000)
        event = parse_gateway_event(_checkout_event(school_a.id, invoice.id, 10000))

        result = reconcile_gateway_event(event, notifier=notifier)

        assert result.outcome == OUTCOME_APPLIED
        assert result.should_acknowledge
        payment = db_session.get(Payment, result.payment_id)
        assert payment.method == METHOD_GATEWAY
        assert payment.gateway_charge_id == "pi_3Ntest001"
        assert payment.reference == "cs_test_a1"
        assert db_session.get(Invoice, invoice.id).status == STATUS_PAID
        assert [e.kind for e in notifier.events] == [KIND_PAYMENT_RECEIVED]

    def test_replay_is_idempotent(self, db_session, scope_a, school_a, family_a, make_invoice, notifier):
        invoice = _sent_invoice(scope_a, family_a, make_invoice, 10000)
        event = parse_gateway_event(_checkout_event(school_a.id, invoice.id, 4000))

        outcomes = [reconcile_gateway_event(event, notifier=notifier).outcome for _ in range(4)]

        assert outcomes == [OUTCOME_APPLIED, OUTCOME_DUPLICATE, OUTCOME_DUPLICATE, OUTCOME_DUPLICATE]
        db_session.expire_all()
        assert db_session.query(Payment).filter_by(gateway_charge_id="pi_3Ntest001").count() == 1
        stored = db_session.get(Invoice, invoice.id)
        assert stored.amount_paid_cents == 4000
        assert stored.status == STATUS_PARTIALLY_PAID
        assert len(notifier.events) == 1

    def test_missing_metadata_rejected(self, db_session, scope_a, family_a, make_invoice):
        invoice = _sent_invoice(scope_a, family_a, make_invoice)
        raw = _checkout_event(None, invoice.id, 10000)

        result = reconcile_gateway_event(parse_gateway_event(raw))

        assert result.outcome == OUTCOME_REJECTED
        assert not result.should_acknowledge
        assert db_session.query(Payment).count() == 0

    def test_metadata_school_must_own_invoice(
        self, db_session, scope_a, school_b, family_a, family_b, make_invoice
    ):
        """Metadata naming school B cannot pay school A's invoice."""
        invoice = _sent_invoice(scope_a, family_a, make_invoice)

        result = reconcile_gateway_event(parse_gateway_event(_checkout_event(school_b.id, invoice.id, 10000)))

        assert result.outcome == OUTCOME_REJECTED
        db_session.expire_all()
        assert db_session.query(Payment).count() == 0
        assert db_session.get(Invoice, invoice.id).amount_paid_cents == 0

    def test_unknown_school_rejected(self, db_session, scope_a, family_a, make_invoice):
        invoice = _sent_invoice(scope_a, family_a, make_invoice)

        result = reconcile_gateway_event(parse_gateway_event(_checkout_event(99999, invoice.id, 10000)))

        assert result.outcome == OUTCOME_REJECTED

    def test_overpayment_rejected(self, db_session, scope_a, school_a, family_a, make_invoice):
        invoice = _sent_invoice(scope_a, family_a, make_invoice, 10000)
        apply_payment(scope_a, invoice.id, 8000, METHOD_CASH)

        result = reconcile_gateway_event(parse_gateway_event(_checkout_event(school_a.id, invoice.id, 5000)))

        assert result.outcome == OUTCOME_REJECTED
        db_session.expire_all()
        assert db_session.get(Invoice, invoice.id).amount_paid_cents == 8000

    def test_rounding_cent_on_paid_invoice_applied(self, db_session, scope_a, school_a, family_a, make_invoice):
        invoice = _sent_invoice(scope_a, family_a, make_invoice, 10000)
        apply_payment(scope_a, invoice.id, 9999, METHOD_CASH)

        result = reconcile_gateway_event(parse_gateway_event(_checkout_event(school_a.id, invoice.id, 2)))

        assert result.outcome == OUTCOME_APPLIED
        assert result.should_acknowledge
        db_session.expire_all()
        stored = db_session.get(Invoice, invoice.id)
        assert stored.amount_paid_cents == 10001
        assert stored.status == STATUS_PAID

    def test_concurrent_duplicate_caught_by_unique_index(
        self, db_session, scope_a, scope_b, school_a, family_a, family_b, make_invoice
    ):
        """A charge id already stored elsewhere fails at insert and is reported as a duplicate."""
        invoice_a = _sent_invoice(scope_a, family_a, make_invoice)
        invoice_b = _sent_invoice(scope_b, family_b, make_invoice)
        apply_payment(scope_b, invoice_b.id, 1000, METHOD_GATEWAY, gateway_charge_id="pi_3Ntest001")

        result = reconcile_gateway_event(parse_gateway_event(_checkout_event(school_a.id, invoice_a.id, 10000)))

        assert result.outcome == OUTCOME_DUPLICATE
        db_session.expire_all()
        assert db_session.get(Invoice, invoice_a.id).amount_paid_cents == 0

    def test_failed_payment_ignored(self, db_session):
        result = reconcile_gateway_event(PaymentFailed(event_id="evt_f", charge_id="pi_f", reason="Card declined"))
        assert result.outcome == OUTCOME_IGNORED
        assert result.should_acknowledge


class TestWebhookVerification:
    def test_valid_signature_returns_event(self, app):
        payload = json.dumps(_checkout_event(1, 2, 300))
        client = GatewayClient.from_config()

        assert client.verify(payload, _sign(payload))["type"] == "checkout.session.completed"

    def test_forged_signature_rejected(self, app):
        payload = json.dumps(_checkout_event(1, 2, 300))
        client = GatewayClient.from_config()

        with pytest.raises(WebhookVerificationError):
            client.verify(payload, _sign(payload, secret="whsec_attacker"))

    def test_stale_timestamp_rejected(self, app):
        payload = json.dumps(_checkout_event(1, 2, 300))
        client = GatewayClient.from_config()

        with pytest.raises(WebhookVerificationError):
            client.verify(payload, _sign(payload, timestamp=int(time.time()) - 3600))

    def test_missing_signature_rejected(self, app):
        with pytest.raises(WebhookVerificationError):
            GatewayClient.from_config().verify("{}", None)

    def test_missing_secret(self):
        with pytest.raises(WebhookVerificationError):
            GatewayClient(None)

    def test_handle_webhook_end_to_end(self, db_session, scope_a, school_a, family_a, make_invoice, notifier):
        invoice = _sent_invoice(scope_a, family_a, make_invoice, 10000)
        payload = json.dumps(_checkout_event(school_a.id, invoice.id, 10000))

        result = handle_webhook(GatewayClient.from_config(), payload, _sign(payload), notifier=notifier)

        assert result.outcome == OUTCOME_APPLIED
        assert db_session.get(Invoice, invoice.id).status == STATUS_PAID
