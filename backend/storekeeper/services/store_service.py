from __future__ import annotations

import logging

from sqlalchemy import func, or_

from ..errors import ConflictError, NotFoundError
from ..extensions import db
from ..models import Debt, Product, Sale, Store, User
from ..models.debts import OPEN_DEBT_STATUSES
from ..time_utils import period_start
from ..validation import ModelValidationPolicy, ValidationError
from .concurrency import lock_for_update, run_with_retry
from .tenant_service import AccessContext, require_store_access

logger = logging.getLogger(__name__)

STORE_MUTABLE_FIELDS = {"name", "address", "phone", "email", "description"}

STORE_POLICY = ModelValidationPolicy(
    writable_fields=STORE_MUTABLE_FIELDS,
    required_on_create={"name"},
)


def create_store(
    name: str,
    *,
    address: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    description: str | None = None,
) -> Store:
    def _op():
        if not name:
            raise ValidationError("Store name is required")

        store = Store(
            name=name,
            address=address,
            phone=phone,
            email=email,
            description=description,
            is_active=True,
        )
        db.session.add(store)
        db.session.commit()
        return store

    return run_with_retry(_op)


def update_store(store_id: int, patch: dict) -> Store:
    def _op():
        store = lock_for_update(db.session.query(Store).filter_by(id=store_id)).first()
        if not store:
            raise NotFoundError("Store not found")

        for key, value in patch.items():
            if key not in STORE_MUTABLE_FIELDS:
                raise ValidationError(f"Field not allowed: {key}")
            setattr(store, key, value)

        db.session.commit()
        return store

    return run_with_retry(_op)


def deactivate_store(store_id: int) -> Store:
    """
    Soft delete. Refused while the store still owns active users or
    active products; those must be deactivated first.
    """
    def _op():
        store = lock_for_update(db.session.query(Store).filter_by(id=store_id)).first()
        if not store:
            raise NotFoundError("Store not found")

        active_users = db.session.query(func.count(User.id)).filter(
            User.store_id == store_id, User.is_active.is_(True)
        ).scalar()
        active_products = db.session.query(func.count(Product.id)).filter(
            Product.store_id == store_id, Product.is_active.is_(True)
        ).scalar()
        if active_users or active_products:
            logger.info(
                "Refusing to deactivate store %s: %s active users, %s active products",
                store_id, active_users, active_products,
            )
            raise ConflictError(
                "Store still has active users or products",
                {"active_users": int(active_users), "active_products": int(active_products)},
            )

        store.is_active = False
        db.session.commit()
        return store

    return run_with_retry(_op)


def get_store(access: AccessContext, store_id: int) -> Store:
    require_store_access(access, store_id)
    store = db.session.query(Store).filter_by(id=store_id).first()
    if not store:
        raise NotFoundError("Store not found")
    return store


def list_stores(
    access: AccessContext,
    *,
    search: str | None = None,
    is_active: bool | None = None,
) -> list[Store]:
    """Admins see every store; sellers only their own."""
    q = db.session.query(Store)
    if not access.is_admin:
        q = q.filter(Store.id == access.store_id)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(Store.name.ilike(pattern), Store.address.ilike(pattern)))
    if is_active is not None:
        q = q.filter(Store.is_active.is_(is_active))
    return q.order_by(Store.name.asc()).all()


def store_stats(access: AccessContext, store_id: int) -> dict:
    store = get_store(access, store_id)
    today = period_start("today")

    product_count = db.session.query(func.count(Product.id)).filter(
        Product.store_id == store.id, Product.is_active.is_(True)
    ).scalar()
    user_count = db.session.query(func.count(User.id)).filter(
        User.store_id == store.id, User.is_active.is_(True)
    ).scalar()
    sales_total, sales_count = db.session.query(
        func.coalesce(func.sum(Sale.total_amount_cents), 0),
        func.count(Sale.id),
    ).filter(Sale.store_id == store.id, Sale.created_at >= today).one()
    outstanding = db.session.query(
        func.coalesce(func.sum(Debt.remaining_amount_cents), 0)
    ).filter(Debt.store_id == store.id, Debt.status.in_(OPEN_DEBT_STATUSES)).scalar()

    return {
        "store_id": store.id,
        "active_products": int(product_count or 0),
        "active_users": int(user_count or 0),
        "today_sales_cents": int(sales_total),
        "today_sales_count": int(sales_count),
        "outstanding_debt_cents": int(outstanding or 0),
    }
