from __future__ import annotations

from ..extensions import db
from schoolbilling.time_utils import to_utc_z


class School(db.Model):
    """
    Multi-tenant root: every tenant is a School.

    All families, terms, lessons, invoices and payments belong to exactly
    one school. No billing data may cross school boundaries.
    """
    __tablename__ = "schools"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<School id={self.id} slug={self.slug!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "email": self.email,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Family(db.Model):
    """Billing unit within a school. Invoices are addressed to a family."""
    __tablename__ = "families"
    __table_args__ = (
        db.Index("ix_families_school_id", "school_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    school = db.relationship("School", backref=db.backref("families", lazy=True))

    def __repr__(self) -> str:
        return f"<Family id={self.id} name={self.name!r} school_id={self.school_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "school_id": self.school_id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }


class Parent(db.Model):
    """Family contact; the recipient of invoice and receipt notifications."""
    __tablename__ = "parents"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False, index=True)
    family_id = db.Column(db.Integer, db.ForeignKey("families.id"), nullable=True, index=True)

    contact_name = db.Column(db.String(255), nullable=False)
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(64), nullable=True)
    is_primary = db.Column(db.Boolean, nullable=False, default=True)

    family = db.relationship("Family", backref=db.backref("parents", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "school_id": self.school_id,
            "family_id": self.family_id,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "is_primary": self.is_primary,
        }


class Term(db.Model):
    """A teaching term; term invoices are generated once per family per term."""
    __tablename__ = "terms"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "school_id": self.school_id,
            "name": self.name,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_active": self.is_active,
        }
