# Overview: Pytest coverage for the per-school overdue sweep.

from datetime import timedelta

from sqlalchemy.exc import OperationalError

from schoolbilling.models import Invoice, School
from schoolbilling.services import overdue_service
from schoolbilling.services.invoice_lifecycle import (
    STATUS_DRAFT,
    STATUS_OVERDUE,
    STATUS_PARTIALLY_PAID,
    STATUS_SENT,
    send_invoice,
)
from schoolbilling.services.overdue_service import sweep_all_overdue, sweep_overdue_for_school
from schoolbilling.services.payment_service import METHOD_CASH, apply_payment
from schoolbilling.time_utils import utcnow


def _sent(scope, family, make_invoice, days_from_now, total_cents=10000):
    invoice = make_invoice(scope, family, total_cents, due_date=utcnow() + timedelta(days=days_from_now))
    send_invoice(scope, invoice.id)
    return invoice


class TestSweepForSchool:
    def test_only_past_due_sent_invoices(self, db_session, scope_a, school_a, family_a, make_invoice):
        past = _sent(scope_a, family_a, make_invoice, -2)
        future = _sent(scope_a, family_a, make_invoice, 5)
        draft = make_invoice(scope_a, family_a, due_date=utcnow() - timedelta(days=10))
        partial = _sent(scope_a, family_a, make_invoice, -3)
        apply_payment(scope_a, partial.id, 1000, METHOD_CASH)

        result = sweep_overdue_for_school(school_a.id)

        assert result.count == 1
        assert result.invoice_ids == [past.id]
        db_session.expire_all()
        assert db_session.get(Invoice, past.id).status == STATUS_OVERDUE
        assert db_session.get(Invoice, future.id).status == STATUS_SENT
        assert db_session.get(Invoice, draft.id).status == STATUS_DRAFT
        assert db_session.get(Invoice, partial.id).status == STATUS_PARTIALLY_PAID

    def test_sweep_is_repeatable(self, db_session, scope_a, school_a, family_a, make_invoice):
        _sent(scope_a, family_a, make_invoice, -1)

        assert sweep_overdue_for_school(school_a.id).count == 1
        assert sweep_overdue_for_school(school_a.id).count == 0

    def test_explicit_now(self, db_session, scope_a, school_a, family_a, make_invoice):
        invoice = _sent(scope_a, family_a, make_invoice, 5)

        result = sweep_overdue_for_school(school_a.id, now=utcnow() + timedelta(days=6))

        assert result.invoice_ids == [invoice.id]

    def test_other_school_untouched(self, db_session, scope_a, scope_b, school_a, family_a, family_b, make_invoice):
        _sent(scope_a, family_a, make_invoice, -1)
        invoice_b = _sent(scope_b, family_b, make_invoice, -1)

        sweep_overdue_for_school(school_a.id)

        db_session.expire_all()
        assert db_session.get(Invoice, invoice_b.id).status == STATUS_SENT


class TestSweepAll:
    def test_sweeps_every_active_school(
        self, db_session, scope_a, scope_b, school_a, school_b, family_a, family_b, make_invoice
    ):
        _sent(scope_a, family_a, make_invoice, -1)
        _sent(scope_a, family_a, make_invoice, -1)
        _sent(scope_b, family_b, make_invoice, -1)

        summary = sweep_all_overdue()

        assert summary["total_count"] == 3
        assert summary["by_school"] == {school_a.id: 2, school_b.id: 1}
        assert summary["errors"] == []

    def test_inactive_school_skipped(self, db_session, scope_b, school_a, school_b, family_b, make_invoice):
        _sent(scope_b, family_b, make_invoice, -1)
        school = db_session.get(School, school_b.id)
        school.is_active = False
        db_session.commit()

        summary = sweep_all_overdue()

        assert school_b.id not in summary["by_school"]
        assert summary["total_count"] == 0

    def test_one_school_failure_does_not_block_others(
        self, db_session, monkeypatch, scope_a, scope_b, school_a, school_b, family_a, family_b, make_invoice
    ):
        _sent(scope_a, family_a, make_invoice, -1)
        invoice_b = _sent(scope_b, family_b, make_invoice, -1)
        failing_school = school_a.id
        real_mark_overdue = overdue_service.mark_overdue

        def flaky_mark_overdue(invoice, now):
            if invoice.school_id == failing_school:
                raise OperationalError("UPDATE invoices", {}, Exception("database is locked"))
            return real_mark_overdue(invoice, now)

        monkeypatch.setattr(overdue_service, "mark_overdue", flaky_mark_overdue)

        summary = sweep_all_overdue()

        assert summary["by_school"] == {school_b.id: 1}
        assert [e["school_id"] for e in summary["errors"]] == [failing_school]
        db_session.expire_all()
        assert db_session.get(Invoice, invoice_b.id).status == STATUS_OVERDUE
