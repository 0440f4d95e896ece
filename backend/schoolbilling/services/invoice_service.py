# Overview: Invoice builder, invoice queries and term invoice generation.

"""
Invoice Builder Service

WHY: Invoices are assembled either from staff-entered line items or from a
family's term enrollments. Either way the builder validates ownership,
computes subtotal/tax/total from the items and allocates the per-school
invoice number.

NUMBERING:
    INV-<year>-<5-digit sequence>, per school, restarting each calendar year.
    The next number is the highest existing number for the school+year plus
    one. Two concurrent creations can pick the same number; the unique
    (school_id, invoice_number) constraint rejects the loser, which is
    retried with a fresh number.

TERM INVOICES:
    At most one invoice per (family, term). A second attempt raises
    ConflictError; the unique (school_id, family_id, term_id) constraint
    backs the check under concurrency.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import BillingError, ConflictError, InvalidStateError, ValidationError
from ..extensions import db
from ..models import (
    Family,
    HybridLessonPattern,
    Invoice,
    InvoiceLineItem,
    Lesson,
    LessonEnrollment,
    Payment,
    Student,
    Term,
)
from schoolbilling.time_utils import parse_iso_datetime, to_naive_utc, utcnow
from .billing_calculator import (
    LineItemInput,
    calculate_hybrid_billing,
    calculate_standard_billing,
    default_lesson_rate_cents,
)
from .concurrency import run_with_retry
from .invoice_lifecycle import (
    OUTSTANDING_STATUSES,
    STATUS_DRAFT,
    STATUS_OVERDUE,
    VALID_STATUSES,
    has_payments,
    require_editable,
    validate_status,
)
from .tenant_service import TenantScope


INVOICE_NUMBER_PREFIX = "INV"
INVOICE_SEQUENCE_PAD = 5

_UNSET = object()


# =============================================================================
# NUMBERING
# =============================================================================

def next_invoice_number(scope: TenantScope, year: int | None = None) -> str:
    """
    Next free invoice number for the scope's school in ``year``.

    Numbers are ordered by length first so that a sequence that outgrew
    five digits still sorts after "INV-2026-99999".
    """
    year = year or utcnow().year
    prefix = f"{INVOICE_NUMBER_PREFIX}-{year}-"

    last = (
        scope.query(Invoice)
        .filter(Invoice.invoice_number.like(f"{prefix}%"))
        .order_by(func.length(Invoice.invoice_number).desc(), Invoice.invoice_number.desc())
        .first()
    )

    sequence = 1
    if last is not None:
        try:
            sequence = int(last.invoice_number[len(prefix):]) + 1
        except ValueError:
            sequence = 1

    return f"{prefix}{sequence:0{INVOICE_SEQUENCE_PAD}d}"


# =============================================================================
# HELPERS
# =============================================================================

def _normalize_items(items) -> list[LineItemInput]:
    """Accept LineItemInput objects or plain dicts; reject empty lists."""
    if not items:
        raise ValidationError("At least one line item is required")

    normalized = []
    for raw in items:
        if isinstance(raw, LineItemInput):
            item = raw
        elif isinstance(raw, dict):
            item = LineItemInput(
                description=raw.get("description"),
                quantity=raw.get("quantity", 1),
                unit_price_cents=raw.get("unit_price_cents"),
            )
        else:
            raise ValidationError("Line items must be LineItemInput or dict")

        if not item.description or not str(item.description).strip():
            raise ValidationError("Line item description is required")
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity < 1:
            raise ValidationError("Line item quantity must be a positive integer")
        if (
            isinstance(item.unit_price_cents, bool)
            or not isinstance(item.unit_price_cents, int)
            or item.unit_price_cents < 0
        ):
            raise ValidationError("Line item unit price must be a non-negative integer number of cents")
        normalized.append(item)
    return normalized


def _coerce_due_date(value) -> datetime:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            parsed = parse_iso_datetime(value)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed
    raise ValidationError("due_date must be a date, datetime or ISO-8601 string")


def _build_line_items(items: list[LineItemInput]) -> list[InvoiceLineItem]:
    return [
        InvoiceLineItem(
            description=item.description.strip(),
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            total_cents=item.total_cents,
        )
        for item in items
    ]


def _apply_totals(invoice: Invoice, items: list[LineItemInput]) -> None:
    subtotal = sum(item.total_cents for item in items)
    # No tax on tuition
    invoice.subtotal_cents = subtotal
    invoice.tax_cents = 0
    invoice.total_cents = subtotal + invoice.tax_cents


def _existing_term_invoice(scope: TenantScope, family_id: int, term_id: int) -> Invoice | None:
    return (
        scope.query(Invoice)
        .filter(Invoice.family_id == family_id, Invoice.term_id == term_id)
        .first()
    )


# =============================================================================
# CREATE / UPDATE / DELETE
# =============================================================================

def create_invoice(
    scope: TenantScope,
    *,
    family_id: int,
    items,
    due_date,
    term_id: int | None = None,
    description: str | None = None,
) -> Invoice:
    """
    Create a DRAFT invoice with line items.

    Args:
        scope: Caller's tenant scope
        family_id: Family being billed (must belong to the school)
        items: LineItemInput objects or dicts with description, quantity,
            unit_price_cents
        due_date: date or datetime
        term_id: Optional term (must belong to the school)
        description: Optional free text

    Returns:
        Invoice in DRAFT status

    Raises:
        ValidationError: empty or malformed items
        NotFoundError: family or term absent or owned by another school
        ConflictError: an invoice already exists for this family and term
    """
    line_items = _normalize_items(items)
    due = _coerce_due_date(due_date)

    def _op():
        family = scope.get(Family, family_id)
        term = scope.get(Term, term_id) if term_id is not None else None

        if term is not None:
            existing = _existing_term_invoice(scope, family.id, term.id)
            if existing is not None:
                raise ConflictError(
                    f"Invoice already exists for {family.name} for this term ({existing.invoice_number})",
                    details={"invoice_id": existing.id, "invoice_number": existing.invoice_number},
                )

        invoice = Invoice(
            school_id=scope.school_id,
            family_id=family.id,
            term_id=term.id if term is not None else None,
            invoice_number=next_invoice_number(scope),
            description=description,
            status=STATUS_DRAFT,
            amount_paid_cents=0,
            due_date=due,
        )
        _apply_totals(invoice, line_items)
        invoice.items = _build_line_items(line_items)

        db.session.add(invoice)
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op, retry_on=(IntegrityError,))
    current_app.logger.info(
        "Created invoice %s for family %s (school %s, total %s cents)",
        invoice.invoice_number, family_id, scope.school_id, invoice.total_cents,
    )
    return invoice


def update_invoice(
    scope: TenantScope,
    invoice_id: int,
    *,
    description=_UNSET,
    due_date=None,
    items=None,
) -> Invoice:
    """
    Edit a DRAFT invoice.

    Items, when given, replace the existing items wholesale and the totals
    are recomputed.

    Raises:
        InvalidStateError: invoice is not a draft or has payments
    """
    line_items = _normalize_items(items) if items is not None else None
    due = _coerce_due_date(due_date) if due_date is not None else None

    def _op():
        invoice = scope.get(Invoice, invoice_id, lock=True)
        require_editable(invoice)

        if description is not _UNSET:
            invoice.description = description
        if due is not None:
            invoice.due_date = due
        if line_items is not None:
            invoice.items = _build_line_items(line_items)
            _apply_totals(invoice, line_items)

        db.session.commit()
        return invoice

    return run_with_retry(_op)


def delete_invoice(scope: TenantScope, invoice_id: int) -> None:
    """
    Hard-delete a DRAFT invoice with no payments.

    Anything else must go through cancel_invoice.
    """
    def _op():
        invoice = scope.get(Invoice, invoice_id, lock=True)
        if invoice.status != STATUS_DRAFT:
            raise InvalidStateError(
                "Can only delete draft invoices. Use cancel instead.",
                details={"status": invoice.status},
            )
        if has_payments(invoice):
            raise InvalidStateError("Cannot delete an invoice with payments")

        db.session.delete(invoice)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Deleted draft invoice %s (school %s)", invoice_id, scope.school_id)


# =============================================================================
# QUERIES
# =============================================================================

def get_invoice(scope: TenantScope, invoice_id: int) -> Invoice:
    return scope.get(Invoice, invoice_id)


def list_invoices(
    scope: TenantScope,
    *,
    family_id: int | None = None,
    term_id: int | None = None,
    status: str | None = None,
    due_from=None,
    due_to=None,
) -> list[Invoice]:
    """Invoices for the school, newest first, with optional filters."""
    query = scope.query(Invoice)
    if family_id is not None:
        query = query.filter(Invoice.family_id == family_id)
    if term_id is not None:
        query = query.filter(Invoice.term_id == term_id)
    if status is not None:
        validate_status(status)
        query = query.filter(Invoice.status == status)
    if due_from is not None:
        query = query.filter(Invoice.due_date >= _coerce_due_date(due_from))
    if due_to is not None:
        query = query.filter(Invoice.due_date <= _coerce_due_date(due_to))
    return query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()


def get_family_invoices(scope: TenantScope, family_id: int) -> list[Invoice]:
    """Invoices a family can see: everything except drafts."""
    scope.get(Family, family_id)
    return (
        scope.query(Invoice)
        .filter(Invoice.family_id == family_id, Invoice.status != STATUS_DRAFT)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .all()
    )


def get_invoice_statistics(scope: TenantScope) -> dict:
    """
    Billing dashboard numbers for the school.

    Returns:
        - counts_by_status: every status, zero-filled
        - outstanding_cents: unpaid balance over SENT/PARTIALLY_PAID/OVERDUE
        - overdue_cents: unpaid balance over OVERDUE
        - recent_payments: ten most recent payments
    """
    counts = {status: 0 for status in sorted(VALID_STATUSES)}
    rows = (
        scope.query(Invoice)
        .with_entities(Invoice.status, func.count(Invoice.id))
        .group_by(Invoice.status)
        .all()
    )
    for status, count in rows:
        counts[status] = count

    outstanding_cents = 0
    overdue_cents = 0
    open_invoices = (
        scope.query(Invoice)
        .with_entities(Invoice.status, Invoice.total_cents, Invoice.amount_paid_cents)
        .filter(Invoice.status.in_(OUTSTANDING_STATUSES))
        .all()
    )
    for status, total_cents, paid_cents in open_invoices:
        balance = max(0, total_cents - paid_cents)
        outstanding_cents += balance
        if status == STATUS_OVERDUE:
            overdue_cents += balance

    recent_payments = (
        scope.query(Payment)
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .limit(10)
        .all()
    )

    return {
        "counts_by_status": counts,
        "total_invoices": sum(counts.values()),
        "outstanding_cents": outstanding_cents,
        "overdue_cents": overdue_cents,
        "recent_payments": [p.to_dict() for p in recent_payments],
    }


# =============================================================================
# TERM INVOICE GENERATION
# =============================================================================

def _enrollment_line_items(
    enrollment: LessonEnrollment,
    *,
    group_rate_cents: int,
    individual_rate_cents: int,
    standard_rate_cents: int | None,
    term_weeks: int,
) -> tuple[LineItemInput, ...]:
    lesson = enrollment.lesson
    label = f"{enrollment.student.full_name} - {lesson.name}"

    pattern: HybridLessonPattern | None = lesson.hybrid_pattern
    if pattern is not None:
        result = calculate_hybrid_billing(
            pattern.group_weeks,
            pattern.individual_weeks,
            group_rate_cents,
            individual_rate_cents,
            label=label,
        )
        return result.line_items

    rate = standard_rate_cents
    if rate is None:
        rate = default_lesson_rate_cents(lesson.lesson_type, lesson.duration_mins)
    return (calculate_standard_billing(term_weeks, rate, label=label),)


def generate_term_invoice(
    scope: TenantScope,
    family_id: int,
    term_id: int,
    *,
    due_date=None,
    group_rate_cents: int | None = None,
    individual_rate_cents: int | None = None,
    standard_rate_cents: int | None = None,
    term_weeks: int | None = None,
) -> Invoice:
    """
    Build a DRAFT invoice from a family's active enrollments in a term.

    Hybrid lessons are billed from their week pattern; every other lesson
    is a flat rate per term week. Rates not given fall back to the
    BILLING_* config values (and, for standard lessons, the lesson's
    default rate).

    Raises:
        NotFoundError: family or term absent or owned by another school
        ConflictError: the family already has an invoice for this term
        ValidationError: the family has no active enrollments in the term
    """
    config = current_app.config
    if group_rate_cents is None:
        group_rate_cents = config["BILLING_GROUP_RATE_CENTS"]
    if individual_rate_cents is None:
        individual_rate_cents = config["BILLING_INDIVIDUAL_RATE_CENTS"]
    if term_weeks is None:
        term_weeks = config["BILLING_STANDARD_TERM_WEEKS"]

    term = scope.get(Term, term_id)
    family = scope.get(Family, family_id)

    existing = _existing_term_invoice(scope, family.id, term.id)
    if existing is not None:
        raise ConflictError(
            f"Invoice already exists for {family.name} for this term ({existing.invoice_number})",
            details={"invoice_id": existing.id, "invoice_number": existing.invoice_number},
        )

    enrollments = (
        scope.query(LessonEnrollment)
        .join(Student, LessonEnrollment.student_id == Student.id)
        .filter(
            Student.family_id == family.id,
            Student.school_id == scope.school_id,
            LessonEnrollment.is_active.is_(True),
            Lesson.term_id == term.id,
        )
        .order_by(LessonEnrollment.id)
        .all()
    )
    if not enrollments:
        raise ValidationError("No active enrollments found for this family and term")

    items: list[LineItemInput] = []
    for enrollment in enrollments:
        items.extend(_enrollment_line_items(
            enrollment,
            group_rate_cents=group_rate_cents,
            individual_rate_cents=individual_rate_cents,
            standard_rate_cents=standard_rate_cents,
            term_weeks=term_weeks,
        ))

    if due_date is None:
        due_date = utcnow() + timedelta(days=config["BILLING_DEFAULT_DUE_DAYS"])

    return create_invoice(
        scope,
        family_id=family.id,
        term_id=term.id,
        description=f"{term.name} - {family.name}",
        due_date=due_date,
        items=items,
    )


@dataclass
class BulkGenerationResult:
    created: list[Invoice] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def _families_enrolled_in_term(scope: TenantScope, term_id: int) -> list[int]:
    rows = (
        scope.query(LessonEnrollment)
        .join(Student, LessonEnrollment.student_id == Student.id)
        .filter(
            LessonEnrollment.is_active.is_(True),
            Lesson.term_id == term_id,
            Student.family_id.isnot(None),
        )
        .with_entities(Student.family_id)
        .distinct()
        .order_by(Student.family_id)
        .all()
    )
    return [row.family_id for row in rows]


def generate_bulk_term_invoices(
    scope: TenantScope,
    term_id: int,
    *,
    family_ids: list[int] | None = None,
    **options,
) -> BulkGenerationResult:
    """
    Generate term invoices for many families.

    Without explicit family_ids, every family with an active enrollment in
    the term is billed. Each family is independent: a failure (including a
    ConflictError for an already-invoiced family) is recorded in
    ``errors`` and the batch continues.
    """
    term = scope.get(Term, term_id)
    targets = family_ids or _families_enrolled_in_term(scope, term.id)

    result = BulkGenerationResult()
    for family_id in targets:
        try:
            result.created.append(generate_term_invoice(scope, family_id, term.id, **options))
        except BillingError as exc:
            db.session.rollback()
            result.errors.append({"family_id": family_id, "error": exc.message})
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(
                "Term invoice generation failed for family %s (school %s)", family_id, scope.school_id
            )
            result.errors.append({"family_id": family_id, "error": "Unknown error"})

    current_app.logger.info(
        "Bulk term invoicing for term %s (school %s): %d created, %d errors",
        term.id, scope.school_id, len(result.created), len(result.errors),
    )
    return result

