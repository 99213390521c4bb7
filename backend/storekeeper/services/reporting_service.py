# Overview: Service-layer operations for reporting; encapsulates read-only aggregation queries.

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta

from sqlalchemy import func

from ..extensions import db
from ..models import Debt, Product, Sale, StockMovement, User
from ..models.debts import OPEN_DEBT_STATUSES
from ..models.inventory import MOVEMENT_IN
from ..time_utils import period_start, to_utc_z, utcnow
from ..validation import ValidationError
from .tenant_service import AccessContext, require_store_access

GROUP_BY_OPTIONS = ("hour", "day", "week", "month")


def _window(access: AccessContext, store_id: int, period: str) -> tuple[datetime, datetime]:
    require_store_access(access, store_id)
    now = utcnow()
    try:
        return period_start(period, now), now
    except ValueError as exc:
        raise ValidationError(str(exc))


def _stock_value_cents(store_id: int) -> int:
    """Current stock valued at purchase cost (per-unit = package price / units)."""
    rows = (
        db.session.query(
            Product.current_stock,
            Product.package_purchase_price_cents,
            Product.units_per_package,
        )
        .filter(Product.store_id == store_id, Product.is_active.is_(True))
        .all()
    )
    total = 0
    for stock, package_price, upp in rows:
        total += (stock * package_price + upp // 2) // upp
    return total


def _sales_in_window(store_id: int, start: datetime, end: datetime):
    return db.session.query(Sale).filter(
        Sale.store_id == store_id,
        Sale.created_at >= start,
        Sale.created_at <= end,
    )


def dashboard(access: AccessContext, *, store_id: int, period: str = "today") -> dict:
    start, end = _window(access, store_id, period)

    sales_total, sales_count = _sales_in_window(store_id, start, end).with_entities(
        func.coalesce(func.sum(Sale.total_amount_cents), 0),
        func.count(Sale.id),
    ).one()

    active = db.session.query(Product).filter(Product.store_id == store_id, Product.is_active.is_(True))
    total_units, product_count = active.with_entities(
        func.coalesce(func.sum(Product.current_stock), 0),
        func.count(Product.id),
    ).one()
    low_stock_count = active.filter(Product.current_stock <= Product.min_stock_alert).count()

    debt_total, debt_count = (
        db.session.query(
            func.coalesce(func.sum(Debt.remaining_amount_cents), 0),
            func.count(Debt.id),
        )
        .filter(Debt.store_id == store_id, Debt.status.in_(OPEN_DEBT_STATUSES))
        .one()
    )

    return {
        "store_id": store_id,
        "period": period,
        "start": to_utc_z(start),
        "sales": {"total_cents": int(sales_total), "count": int(sales_count)},
        "stock": {
            "total_units": int(total_units),
            "total_value_cents": _stock_value_cents(store_id),
            "product_count": int(product_count),
            "low_stock_count": low_stock_count,
        },
        "debts": {"outstanding_cents": int(debt_total), "count": int(debt_count)},
    }


def _bucket(dt: datetime, group_by: str) -> str:
    if group_by == "hour":
        return dt.strftime("%Y-%m-%dT%H:00")
    if group_by == "week":
        monday = dt - timedelta(days=dt.weekday())
        return monday.strftime("%Y-%m-%d")
    if group_by == "month":
        return dt.strftime("%Y-%m")
    return dt.strftime("%Y-%m-%d")


def sales_trends(
    access: AccessContext,
    *,
    store_id: int,
    period: str = "week",
    group_by: str = "day",
) -> dict:
    """Sales totals bucketed by hour/day/week(Monday)/month, oldest first."""
    if group_by not in GROUP_BY_OPTIONS:
        raise ValidationError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")
    start, end = _window(access, store_id, period)

    rows = (
        _sales_in_window(store_id, start, end)
        .with_entities(Sale.created_at, Sale.total_amount_cents)
        .order_by(Sale.created_at.asc())
        .all()
    )
    buckets: OrderedDict[str, dict] = OrderedDict()
    for created_at, total in rows:
        key = _bucket(created_at, group_by)
        bucket = buckets.setdefault(key, {"date": key, "total_cents": 0, "count": 0})
        bucket["total_cents"] += total
        bucket["count"] += 1

    return {"store_id": store_id, "period": period, "group_by": group_by, "trends": list(buckets.values())}


def top_products(access: AccessContext, *, store_id: int, period: str = "month", limit: int = 10) -> dict:
    start, end = _window(access, store_id, period)
    limit = max(1, min(limit, 100))

    quantity = func.sum(Sale.quantity).label("quantity")
    rows = (
        _sales_in_window(store_id, start, end)
        .join(Product, Product.id == Sale.product_id)
        .with_entities(
            Sale.product_id,
            Product.name,
            Product.category,
            quantity,
            func.sum(Sale.total_amount_cents),
            func.count(Sale.id),
        )
        .group_by(Sale.product_id, Product.name, Product.category)
        .order_by(quantity.desc(), Product.name.asc())
        .limit(limit)
        .all()
    )
    return {
        "store_id": store_id,
        "period": period,
        "products": [
            {
                "product_id": product_id,
                "name": name,
                "category": category,
                "quantity_sold": int(qty or 0),
                "revenue_cents": int(revenue or 0),
                "sale_count": int(count),
            }
            for product_id, name, category, qty, revenue, count in rows
        ],
    }


def seller_performance(access: AccessContext, *, store_id: int, period: str = "month") -> dict:
    start, end = _window(access, store_id, period)

    total = func.sum(Sale.total_amount_cents).label("total")
    rows = (
        _sales_in_window(store_id, start, end)
        .join(User, User.id == Sale.seller_id)
        .with_entities(
            Sale.seller_id,
            User.name,
            total,
            func.sum(Sale.quantity),
            func.count(Sale.id),
        )
        .group_by(Sale.seller_id, User.name)
        .order_by(total.desc())
        .all()
    )
    sellers = []
    for seller_id, name, total_cents, qty, count in rows:
        total_cents = int(total_cents or 0)
        sellers.append({
            "seller_id": seller_id,
            "name": name,
            "total_sales_cents": total_cents,
            "total_quantity": int(qty or 0),
            "sale_count": int(count),
            "average_sale_cents": total_cents // count if count else 0,
        })
    return {"store_id": store_id, "period": period, "sellers": sellers}


def financial_overview(access: AccessContext, *, store_id: int, period: str = "month") -> dict:
    """
    Revenue vs stock purchases over the period.

    expenses are IN movements (stock bought) valued at their recorded total;
    net_profit = revenue - expenses.
    """
    start, end = _window(access, store_id, period)

    revenue = _sales_in_window(store_id, start, end).with_entities(
        func.coalesce(func.sum(Sale.total_amount_cents), 0)
    ).scalar()
    expenses = (
        db.session.query(func.coalesce(func.sum(StockMovement.total_value_cents), 0))
        .filter(
            StockMovement.store_id == store_id,
            StockMovement.type == MOVEMENT_IN,
            StockMovement.created_at >= start,
            StockMovement.created_at <= end,
        )
        .scalar()
    )
    outstanding = (
        db.session.query(func.coalesce(func.sum(Debt.remaining_amount_cents), 0))
        .filter(Debt.store_id == store_id, Debt.status.in_(OPEN_DEBT_STATUSES))
        .scalar()
    )

    revenue = int(revenue or 0)
    expenses = int(expenses or 0)
    net_profit = revenue - expenses
    return {
        "store_id": store_id,
        "period": period,
        "revenue_cents": revenue,
        "expenses_cents": expenses,
        "net_profit_cents": net_profit,
        "stock_value_cents": _stock_value_cents(store_id),
        "outstanding_debts_cents": int(outstanding or 0),
        "profit_margin_percent": round(net_profit * 100 / revenue, 2) if revenue > 0 else 0.0,
    }
