"""
Tenant Scoping: the single chokepoint for school-owned data

WHY: Every billing read and write is scoped to the caller's school. Instead
of each call site remembering a ``school_id`` filter, services receive a
TenantScope and query through it.

SECURITY INVARIANTS:
1. The school id comes from the authenticated context, never from payload
2. Absent rows and rows owned by another school raise the same NotFoundError
3. Line items and payments are scoped through their owning invoice;
   enrollments and hybrid patterns through their owning lesson

USAGE:
    scope = TenantScope.for_school(school_id)
    invoice = scope.get(Invoice, invoice_id, lock=True)
    drafts = scope.query(Invoice).filter_by(status="DRAFT").all()
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app, g

from ..errors import NotFoundError, TenantContextError
from ..extensions import db
from ..models import (
    HybridLessonPattern,
    Invoice,
    InvoiceLineItem,
    Lesson,
    LessonEnrollment,
    Payment,
    School,
)
from .concurrency import lock_for_update


# Models without a school_id column, scoped through their parent row
_SCOPED_THROUGH_PARENT = {
    InvoiceLineItem: (Invoice, "invoice_id"),
    Payment: (Invoice, "invoice_id"),
    LessonEnrollment: (Lesson, "lesson_id"),
    HybridLessonPattern: (Lesson, "lesson_id"),
}


@dataclass(frozen=True)
class TenantContext:
    """Active school for one operation."""
    school_id: int

    @classmethod
    def from_g(cls) -> "TenantContext":
        """
        Build the context from Flask ``g`` as set by the auth collaborator.

        Raises TenantContextError if no school was established.
        """
        school_id = getattr(g, "school_id", None)
        if school_id is None:
            raise TenantContextError("Tenant context not established")
        return cls(school_id=int(school_id))


class TenantScope:
    """Tenant-scoped query facade over the SQLAlchemy session."""

    def __init__(self, context: TenantContext):
        if context is None or context.school_id is None:
            raise TenantContextError("Tenant context not established")
        self.context = context

    @classmethod
    def for_school(cls, school_id: int) -> "TenantScope":
        return cls(TenantContext(school_id=school_id))

    @classmethod
    def current(cls) -> "TenantScope":
        return cls(TenantContext.from_g())

    @property
    def school_id(self) -> int:
        return self.context.school_id

    def query(self, model):
        """Base query for ``model`` restricted to this school."""
        if model in _SCOPED_THROUGH_PARENT:
            parent, fk_name = _SCOPED_THROUGH_PARENT[model]
            return (
                db.session.query(model)
                .join(parent, getattr(model, fk_name) == parent.id)
                .filter(parent.school_id == self.school_id)
            )
        if not hasattr(model, "school_id"):
            raise TypeError(f"{model.__name__} is not a school-owned model")
        return db.session.query(model).filter(model.school_id == self.school_id)

    def get(self, model, record_id: int, *, lock: bool = False):
        """
        Fetch one school-owned row by id.

        Raises NotFoundError when the row is missing or belongs to another
        school; the two cases are indistinguishable to the caller.
        """
        query = self.query(model).filter(model.id == record_id)
        if lock:
            query = lock_for_update(query)
        record = query.first()
        if record is None:
            current_app.logger.warning(
                "Scoped lookup miss: %s %s for school %s",
                model.__name__, record_id, self.school_id,
            )
            raise NotFoundError(f"{model.__name__} not found")
        return record

    def owns(self, model, record_id: int) -> bool:
        return db.session.query(self.query(model).filter(model.id == record_id).exists()).scalar()


def require_active_school(school_id: int) -> School:
    """
    Validate that a school exists and is active.

    Raises:
        NotFoundError if the school doesn't exist or is inactive
    """
    school = db.session.query(School).filter_by(id=school_id).first()
    if not school or not school.is_active:
        raise NotFoundError("School not found")
    return school


def get_active_school_ids() -> list[int]:
    rows = db.session.query(School.id).filter_by(is_active=True).order_by(School.id).all()
    return [row.id for row in rows]
