# Overview: Service-layer operations for the debt ledger; encapsulates business logic and database work.

"""
Debt Ledger

WHY: A credit sale leaves a balance that is paid down over time. The ledger
must keep remaining_amount_cents == amount_cents - paid_amount_cents after
every payment, and never accept more than what is owed.

Rules:
- One debt per sale (debts.sale_id is unique; checked before insert too).
- amount_cents is fixed at creation from the sale total.
- Payments are append-only. Each one is applied with a conditional UPDATE
  (remaining >= amount) so two concurrent payments cannot overpay.
- Stored status is PENDING, PARTIAL or PAID. OVERDUE is derived on read
  (open debt with due_date in the past) and is never written.
- Metadata (client name/phone, notes, due date) can be edited at any time;
  amounts and status cannot.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, func, or_, update

from ..errors import ConflictError, PaymentExceedsRemainingError
from ..extensions import db
from ..models import Debt, DebtPayment, Sale
from ..models.debts import (
    DEBT_OVERDUE,
    DEBT_PAID,
    DEBT_PARTIAL,
    DEBT_PENDING,
    DEBT_STATUSES,
    OPEN_DEBT_STATUSES,
)
from ..time_utils import period_start, to_utc_z, utcnow
from ..validation import ModelValidationPolicy, ValidationError
from .concurrency import lock_for_update, run_with_retry
from .tenant_service import AccessContext, require_record_access, require_store_access

UNKNOWN_CLIENT = "Unknown"

DEBT_MUTABLE_FIELDS = {"client_name", "client_phone", "notes", "due_date"}

DEBT_UPDATE_POLICY = ModelValidationPolicy(writable_fields=DEBT_MUTABLE_FIELDS)

DEBT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields=DEBT_MUTABLE_FIELDS | {"sale_id", "store_id"},
    required_on_create={"sale_id"},
)

PAYMENT_POLICY = ModelValidationPolicy(
    writable_fields={"debt_id", "amount_cents", "payment_type", "notes"},
    required_on_create={"amount_cents"},
)


def _open_debt_inner(
    *,
    sale: Sale,
    client_name: str | None = None,
    client_phone: str | None = None,
    due_date: datetime | None = None,
    notes: str | None = None,
    debt_id: str | None = None,
) -> Debt:
    """Open the single debt of a sale, without commit."""
    existing = db.session.query(Debt.id).filter_by(sale_id=sale.id).first()
    if existing:
        raise ConflictError("Sale already has a debt", {"sale_id": sale.id, "debt_id": existing[0]})

    amount = sale.total_amount_cents
    debt = Debt(
        sale_id=sale.id,
        store_id=sale.store_id,
        amount_cents=amount,
        paid_amount_cents=0,
        remaining_amount_cents=amount,
        status=DEBT_PENDING if amount > 0 else DEBT_PAID,
        due_date=due_date,
        client_name=client_name or sale.client_name or UNKNOWN_CLIENT,
        client_phone=client_phone or sale.client_phone,
        notes=notes,
    )
    if debt_id:
        debt.id = debt_id
    sale.is_debt = True
    db.session.add(debt)
    db.session.flush()
    return debt


def open_debt(
    access: AccessContext,
    *,
    sale_id: str,
    client_name: str | None = None,
    client_phone: str | None = None,
    due_date: datetime | None = None,
    notes: str | None = None,
) -> Debt:
    """Open a debt for an existing sale that does not have one."""
    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        require_record_access(access, sale, "Sale")
        debt = _open_debt_inner(
            sale=sale,
            client_name=client_name,
            client_phone=client_phone,
            due_date=due_date,
            notes=notes,
        )
        db.session.commit()
        return debt

    return run_with_retry(_op)


def _add_payment_inner(
    *,
    debt: Debt,
    amount_cents: int,
    payment_type: str = "CASH",
    notes: str | None = None,
    user_id: int | None = None,
    payment_id: str | None = None,
) -> DebtPayment:
    """Append a payment and move the balance, without commit."""
    if amount_cents is None or amount_cents <= 0:
        raise ValidationError("amount_cents must be > 0")

    if amount_cents > debt.remaining_amount_cents:
        raise PaymentExceedsRemainingError(
            "Payment exceeds remaining amount",
            {"debt_id": debt.id, "remaining_amount_cents": debt.remaining_amount_cents},
        )

    result = db.session.execute(
        update(Debt)
        .where(Debt.id == debt.id, Debt.remaining_amount_cents >= amount_cents)
        .values(
            paid_amount_cents=Debt.paid_amount_cents + amount_cents,
            remaining_amount_cents=Debt.remaining_amount_cents - amount_cents,
            status=case(
                (Debt.remaining_amount_cents - amount_cents == 0, DEBT_PAID),
                else_=DEBT_PARTIAL,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(debt)
    if result.rowcount == 0:
        raise PaymentExceedsRemainingError(
            "Payment exceeds remaining amount",
            {"debt_id": debt.id, "remaining_amount_cents": debt.remaining_amount_cents},
        )

    payment = DebtPayment(
        debt_id=debt.id,
        amount_cents=amount_cents,
        payment_type=payment_type or "CASH",
        notes=notes,
        created_by_user_id=user_id,
    )
    if payment_id:
        payment.id = payment_id
    db.session.add(payment)
    db.session.flush()
    return payment


def add_payment(
    access: AccessContext,
    *,
    debt_id: str,
    amount_cents: int,
    payment_type: str = "CASH",
    notes: str | None = None,
) -> tuple[DebtPayment, Debt]:
    """
    Record a payment against a debt.

    Raises PaymentExceedsRemainingError when amount_cents > remaining,
    including any payment on a fully paid debt.
    """
    def _op():
        debt = lock_for_update(db.session.query(Debt).filter_by(id=debt_id)).first()
        require_record_access(access, debt, "Debt")
        payment = _add_payment_inner(
            debt=debt,
            amount_cents=amount_cents,
            payment_type=payment_type,
            notes=notes,
            user_id=access.user_id,
        )
        db.session.commit()
        return payment, debt

    return run_with_retry(_op)


def _update_debt_inner(*, access: AccessContext, debt_id: str, patch: dict) -> Debt:
    debt = get_debt(access, debt_id)
    for key, value in patch.items():
        if key not in DEBT_MUTABLE_FIELDS:
            raise ValidationError(f"Field not allowed: {key}")
        if key == "client_name" and not value:
            value = UNKNOWN_CLIENT
        setattr(debt, key, value)
    db.session.flush()
    return debt


def update_debt(access: AccessContext, *, debt_id: str, patch: dict) -> Debt:
    """Metadata-only update. Amounts and status are owned by add_payment."""
    def _op():
        debt = _update_debt_inner(access=access, debt_id=debt_id, patch=patch)
        db.session.commit()
        return debt

    return run_with_retry(_op)


def get_debt(access: AccessContext, debt_id: str) -> Debt:
    debt = db.session.query(Debt).filter_by(id=debt_id).first()
    return require_record_access(access, debt, "Debt")


def overdue_filter(now: datetime):
    return db.and_(
        Debt.status.in_(OPEN_DEBT_STATUSES),
        Debt.due_date.isnot(None),
        Debt.due_date < now,
    )


def list_debts(
    access: AccessContext,
    *,
    store_id: int,
    status: str | None = None,
    client_name: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Debt]:
    """
    Store debts, newest first.

    status=OVERDUE selects open debts past due. PENDING/PARTIAL select
    stored status and exclude the overdue ones, matching what to_dict shows.
    """
    require_store_access(access, store_id)
    if status is not None and status not in DEBT_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(DEBT_STATUSES)}")

    now = utcnow()
    q = db.session.query(Debt).filter(Debt.store_id == store_id)
    if status == DEBT_OVERDUE:
        q = q.filter(overdue_filter(now))
    elif status in OPEN_DEBT_STATUSES:
        q = q.filter(
            Debt.status == status,
            or_(Debt.due_date.is_(None), Debt.due_date >= now),
        )
    elif status:
        q = q.filter(Debt.status == status)
    if client_name:
        q = q.filter(Debt.client_name.ilike(f"%{client_name.strip()}%"))
    if start is not None:
        q = q.filter(Debt.created_at >= start)
    if end is not None:
        q = q.filter(Debt.created_at <= end)
    return q.order_by(Debt.created_at.desc()).all()


def overdue_debts(access: AccessContext, *, store_id: int) -> list[Debt]:
    require_store_access(access, store_id)
    return (
        db.session.query(Debt)
        .filter(Debt.store_id == store_id, overdue_filter(utcnow()))
        .order_by(Debt.due_date.asc())
        .all()
    )


def debt_stats(access: AccessContext, *, store_id: int, period: str = "month") -> dict:
    """Debt totals over a period plus the current overdue count."""
    require_store_access(access, store_id)
    try:
        start = period_start(period)
    except ValueError as exc:
        raise ValidationError(str(exc))
    now = utcnow()

    in_period = db.session.query(Debt).filter(Debt.store_id == store_id, Debt.created_at >= start)
    total_amount, total_remaining, total_count = in_period.with_entities(
        func.coalesce(func.sum(Debt.amount_cents), 0),
        func.coalesce(func.sum(Debt.remaining_amount_cents), 0),
        func.count(Debt.id),
    ).one()
    paid_amount, paid_count = in_period.filter(Debt.status == DEBT_PAID).with_entities(
        func.coalesce(func.sum(Debt.amount_cents), 0),
        func.count(Debt.id),
    ).one()
    overdue_count = (
        db.session.query(func.count(Debt.id))
        .filter(Debt.store_id == store_id, overdue_filter(now))
        .scalar()
    )
    payments_amount, payments_count = (
        db.session.query(
            func.coalesce(func.sum(DebtPayment.amount_cents), 0),
            func.count(DebtPayment.id),
        )
        .join(Debt, Debt.id == DebtPayment.debt_id)
        .filter(Debt.store_id == store_id, DebtPayment.created_at >= start)
        .one()
    )

    return {
        "store_id": store_id,
        "period": period,
        "start": to_utc_z(start),
        "total": {
            "amount_cents": int(total_amount),
            "remaining_cents": int(total_remaining),
            "count": int(total_count),
        },
        "paid": {"amount_cents": int(paid_amount), "count": int(paid_count)},
        "overdue_count": int(overdue_count or 0),
        "payments": {"amount_cents": int(payments_amount), "count": int(payments_count)},
    }
