# Overview: Scheduled overdue sweep, run per school with failures isolated.

"""
Overdue Sweeper

Moves SENT invoices whose due date has passed to OVERDUE. The sweep runs
one school at a time in its own transaction so a data error in one school
never blocks the others. The transition itself goes through
invoice_lifecycle.mark_overdue; this module never writes status directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import BillingError
from ..extensions import db
from ..models import Invoice
from schoolbilling.time_utils import to_naive_utc, utcnow
from .concurrency import lock_for_update, run_with_retry
from .invoice_lifecycle import STATUS_SENT, mark_overdue
from .tenant_service import TenantScope, get_active_school_ids, require_active_school


@dataclass
class SweepResult:
    school_id: int
    count: int = 0
    invoice_ids: list[int] = field(default_factory=list)


def sweep_overdue_for_school(school_id: int, *, now: datetime | None = None) -> SweepResult:
    """Mark every past-due SENT invoice of one school as OVERDUE."""
    now = to_naive_utc(now) or utcnow()
    require_active_school(school_id)
    scope = TenantScope.for_school(school_id)

    def _op():
        result = SweepResult(school_id=school_id)
        invoices = lock_for_update(
            scope.query(Invoice)
            .filter(Invoice.status == STATUS_SENT, Invoice.due_date < now)
            .order_by(Invoice.id)
        ).all()
        for invoice in invoices:
            if mark_overdue(invoice, now):
                result.invoice_ids.append(invoice.id)
        result.count = len(result.invoice_ids)
        db.session.commit()
        return result

    result = run_with_retry(_op)
    current_app.logger.info("Overdue sweep for school %s: %d invoice(s) marked overdue", school_id, result.count)
    return result


def sweep_all_overdue(*, now: datetime | None = None) -> dict:
    """
    Run the overdue sweep for every active school.

    Returns:
        {"total_count": int, "by_school": {school_id: count}, "errors": [...]}
    """
    now = to_naive_utc(now) or utcnow()
    summary = {"total_count": 0, "by_school": {}, "errors": []}

    for school_id in get_active_school_ids():
        try:
            result = sweep_overdue_for_school(school_id, now=now)
        except (BillingError, SQLAlchemyError) as exc:
            db.session.rollback()
            current_app.logger.exception("Overdue sweep failed for school %s", school_id)
            summary["errors"].append({"school_id": school_id, "error": str(exc)})
            continue
        summary["by_school"][school_id] = result.count
        summary["total_count"] += result.count

    return summary
