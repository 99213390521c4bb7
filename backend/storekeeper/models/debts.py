from __future__ import annotations

from datetime import datetime

from ..extensions import db
from storekeeper.time_utils import to_utc_z, utcnow
from .columns import new_uuid


DEBT_PENDING = "PENDING"
DEBT_PARTIAL = "PARTIAL"
DEBT_PAID = "PAID"
DEBT_OVERDUE = "OVERDUE"

# Statuses the ledger writes. OVERDUE is derived on read.
STORED_DEBT_STATUSES = (DEBT_PENDING, DEBT_PARTIAL, DEBT_PAID)
OPEN_DEBT_STATUSES = (DEBT_PENDING, DEBT_PARTIAL)
DEBT_STATUSES = STORED_DEBT_STATUSES + (DEBT_OVERDUE,)


class Debt(db.Model):
    """
    Outstanding balance for one credit sale.

    amount_cents is fixed at creation. paid/remaining/status only change
    through debt_service.add_payment, which appends a DebtPayment in the same
    transaction. The CHECK constraints hold the ledger invariant at the
    database level as well.
    """
    __tablename__ = "debts"
    __table_args__ = (
        db.CheckConstraint("paid_amount_cents >= 0", name="ck_debts_paid_non_negative"),
        db.CheckConstraint(
            "remaining_amount_cents = amount_cents - paid_amount_cents",
            name="ck_debts_remaining_balance",
        ),
        db.Index("ix_debts_store_status", "store_id", "status"),
        db.Index("ix_debts_store_updated", "store_id", "updated_at"),
        db.Index("ix_debts_store_due", "store_id", "due_date"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    sale_id = db.Column(db.String(36), db.ForeignKey("sales.id"), nullable=False, unique=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    remaining_amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=DEBT_PENDING)

    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    client_name = db.Column(db.String(255), nullable=False)
    client_phone = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    sale = db.relationship("Sale", back_populates="debt")
    payments = db.relationship(
        "DebtPayment",
        back_populates="debt",
        order_by="DebtPayment.created_at.desc()",
        lazy=True,
    )

    def is_overdue(self, now: datetime | None = None) -> bool:
        if self.status not in OPEN_DEBT_STATUSES or self.due_date is None:
            return False
        return self.due_date < (now or utcnow())

    def effective_status(self, now: datetime | None = None) -> str:
        return DEBT_OVERDUE if self.is_overdue(now) else self.status

    def to_dict(self, *, include_payments: bool = False) -> dict:
        data = {
            "id": self.id,
            "sale_id": self.sale_id,
            "store_id": self.store_id,
            "amount_cents": self.amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "remaining_amount_cents": self.remaining_amount_cents,
            "status": self.effective_status(),
            "stored_status": self.status,
            "due_date": to_utc_z(self.due_date) if self.due_date else None,
            "client_name": self.client_name,
            "client_phone": self.client_phone,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at, precise=True),
        }
        if include_payments:
            data["payments"] = [p.to_dict() for p in self.payments]
        return data


class DebtPayment(db.Model):
    """Append-only payment against a debt."""
    __tablename__ = "debt_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_debt_payments_amount_positive"),
        db.Index("ix_debt_payments_debt_created", "debt_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    debt_id = db.Column(db.String(36), db.ForeignKey("debts.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    payment_type = db.Column(db.String(32), nullable=False, default="CASH")
    notes = db.Column(db.Text, nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    debt = db.relationship("Debt", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "debt_id": self.debt_id,
            "amount_cents": self.amount_cents,
            "payment_type": self.payment_type,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
