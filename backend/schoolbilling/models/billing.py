from __future__ import annotations

from ..extensions import db
from schoolbilling.time_utils import to_utc_z


class Invoice(db.Model):
    """
    Billing document for a family, optionally tied to a term.

    WHY: The invoice row is the shared mutable state of the billing engine.
    Only the lifecycle service and the payment service write status and
    amount_paid_cents; version_id guards against lost updates.

    All amounts are in cents. tax_cents is currently always zero.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("school_id", "invoice_number", name="uq_invoices_school_number"),
        db.UniqueConstraint("school_id", "family_id", "term_id", name="uq_invoices_school_family_term"),
        db.Index("ix_invoices_school_status_due", "school_id", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False, index=True)
    family_id = db.Column(db.Integer, db.ForeignKey("families.id"), nullable=False, index=True)
    term_id = db.Column(db.Integer, db.ForeignKey("terms.id"), nullable=True, index=True)

    # Human-readable number, e.g. "INV-2026-00001"
    invoice_number = db.Column(db.String(32), nullable=False)
    description = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)

    due_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    family = db.relationship("Family", backref=db.backref("invoices", lazy=True))
    term = db.relationship("Term")
    items = db.relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.id",
    )
    payments = db.relationship(
        "Payment",
        back_populates="invoice",
        order_by="Payment.paid_at.desc()",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance_cents(self) -> int:
        return self.total_cents - self.amount_paid_cents

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.invoice_number!r} status={self.status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "school_id": self.school_id,
            "family_id": self.family_id,
            "term_id": self.term_id,
            "invoice_number": self.invoice_number,
            "description": self.description,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "balance_cents": self.balance_cents,
            "due_date": to_utc_z(self.due_date),
            "sent_at": to_utc_z(self.sent_at),
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["payments"] = [payment.to_dict() for payment in self.payments]
        return data


class InvoiceLineItem(db.Model):
    """Line on an invoice. Replaced wholesale while the invoice is a draft."""
    __tablename__ = "invoice_line_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    invoice = db.relationship("Invoice", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
        }


class Payment(db.Model):
    """
    Append-only payment ledger row.

    METHODS:
    - CASH, BANK_TRANSFER, OTHER: recorded manually by staff
    - GATEWAY: card payment reconciled from the payment processor webhook

    gateway_charge_id is the processor's charge identifier and the
    de-duplication key for webhook replays; it is unique when present.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("gateway_charge_id", name="uq_payments_gateway_charge_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False, index=True)

    reference = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    gateway_charge_id = db.Column(db.String(255), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    invoice = db.relationship("Invoice", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "reference": self.reference,
            "notes": self.notes,
            "gateway_charge_id": self.gateway_charge_id,
            "paid_at": to_utc_z(self.paid_at),
        }
