# Overview: Pytest coverage for sale processing.

from datetime import timedelta

import pytest
from sqlalchemy import update

from storekeeper.errors import AccessDeniedError, ConflictError, InsufficientStockError, NotFoundError
from storekeeper.extensions import db
from storekeeper.models import Debt, Product, Sale, StockMovement
from storekeeper.services import debt_service, products_service, sales_service
from storekeeper.time_utils import utcnow
from storekeeper.validation import ValidationError


def _sale(access, product, **overrides):
    fields = {
        "product_id": product.id,
        "quantity": 2,
        "sale_type": "UNIT",
        "payment_type": "CASH",
    }
    fields.update(overrides)
    return sales_service.create_sale(access, **fields)


class TestCreateSale:

    def test_unit_sale(self, db_session, access_a, product_a):
        """Two units at 100 -> total 200, stock 8, one OUT of 2 referencing the sale."""
        sale = _sale(access_a, product_a)

        assert sale.total_amount_cents == 200
        assert sale.unit_price_cents == 100
        assert db.session.get(Product, product_a.id).current_stock == 8

        outs = db.session.query(StockMovement).filter_by(product_id=product_a.id, type="OUT").all()
        assert len(outs) == 1
        assert outs[0].quantity == 2
        assert outs[0].reference == sale.id
        assert outs[0].reason == "Sale"
        assert outs[0].total_value_cents == 200

    def test_package_sale(self, db_session, access_a, product_a):
        """One package consumes units_per_package units at the package price."""
        sale = _sale(access_a, product_a, quantity=1, sale_type="PACKAGE")

        assert sale.total_amount_cents == 450
        assert db.session.get(Product, product_a.id).current_stock == 5

    def test_insufficient_stock_writes_nothing(self, db_session, access_a, product_a):
        with pytest.raises(InsufficientStockError) as exc_info:
            _sale(access_a, product_a, quantity=3, sale_type="PACKAGE")

        assert exc_info.value.details["requested"] == 15
        assert exc_info.value.details["available"] == 10
        assert db.session.get(Product, product_a.id).current_stock == 10
        assert db.session.query(Sale).count() == 0

    def test_zero_quantity_rejected(self, db_session, access_a, product_a):
        with pytest.raises(ValidationError):
            _sale(access_a, product_a, quantity=0)

    def test_debt_sale_opens_debt(self, db_session, access_a, product_a):
        due = utcnow() + timedelta(days=14)
        sale = _sale(access_a, product_a, is_debt=True, client_name="Awa", client_phone="+221700000000",
                     due_date=due)

        debt = db.session.query(Debt).filter_by(sale_id=sale.id).one()
        assert sale.is_debt is True
        assert debt.amount_cents == 200
        assert debt.remaining_amount_cents == 200
        assert debt.status == "PENDING"
        assert debt.client_name == "Awa"
        assert debt.store_id == sale.store_id

    def test_debt_sale_without_client_name(self, db_session, access_a, product_a):
        sale = _sale(access_a, product_a, is_debt=True)
        debt = db.session.query(Debt).filter_by(sale_id=sale.id).one()
        assert debt.client_name == "Unknown"

    def test_failure_after_stock_write_rolls_back_everything(self, db_session, access_a, product_a, monkeypatch):
        """A fault while opening the debt leaves no sale, no movement and the stock untouched."""

        def _boom(**kwargs):
            raise RuntimeError("debt store unavailable")

        monkeypatch.setattr(sales_service, "_open_debt_inner", _boom)

        with pytest.raises(RuntimeError):
            _sale(access_a, product_a, is_debt=True)

        assert db.session.get(Product, product_a.id).current_stock == 10
        assert db.session.query(Sale).count() == 0
        assert db.session.query(StockMovement).filter_by(type="OUT").count() == 0
        assert db.session.query(Debt).count() == 0

    def test_concurrent_depletion_at_stock_write(self, db_session, access_a, product_a, monkeypatch):
        """Stock drained after the sale's own check fails at the decrement and writes nothing."""
        real_apply = sales_service._apply_movement_inner

        def _drained(*, product, **kwargs):
            db.session.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(current_stock=1)
                .execution_options(synchronize_session=False)
            )
            return real_apply(product=product, **kwargs)

        monkeypatch.setattr(sales_service, "_apply_movement_inner", _drained)

        with pytest.raises(InsufficientStockError) as exc_info:
            _sale(access_a, product_a, is_debt=True)

        assert exc_info.value.details["available"] == 1
        assert db.session.get(Product, product_a.id).current_stock == 10
        assert db.session.query(Sale).count() == 0
        assert db.session.query(Debt).count() == 0
        assert db.session.query(StockMovement).filter_by(type="OUT").count() == 0

    def test_inactive_product_rejected(self, db_session, access_a, product_a):
        products_service.deactivate_product(access=access_a, product_id=product_a.id)
        with pytest.raises(ConflictError):
            _sale(access_a, product_a)

    def test_product_from_other_store_not_found(self, db_session, access_a, product_b):
        with pytest.raises(NotFoundError):
            _sale(access_a, product_b)

    def test_seller_cannot_sell_into_other_store(self, db_session, access_a, store_b, product_b):
        with pytest.raises(AccessDeniedError):
            _sale(access_a, product_b, store_id=store_b.id)

    def test_admin_must_name_store(self, db_session, admin_access, store_a, product_a):
        with pytest.raises(AccessDeniedError):
            _sale(admin_access, product_a)

        sale = _sale(admin_access, product_a, store_id=store_a.id)
        assert sale.store_id == store_a.id

    def test_client_supplied_id_is_kept_and_unique(self, db_session, access_a, product_a):
        sale = _sale(access_a, product_a, sale_id="client-sale-1")
        assert sale.id == "client-sale-1"

        with pytest.raises(ConflictError):
            _sale(access_a, product_a, sale_id="client-sale-1")


class TestUpdateAndList:

    def test_update_only_touches_client_metadata(self, db_session, access_a, product_a):
        sale = _sale(access_a, product_a)
        updated = sales_service.update_sale(access_a, sale_id=sale.id, patch={"client_name": "Moussa"})
        assert updated.client_name == "Moussa"

        with pytest.raises(ValidationError):
            sales_service.update_sale(access_a, sale_id=sale.id, patch={"quantity": 9})

    def test_list_filters_debt_sales(self, db_session, access_a, store_a, product_a):
        _sale(access_a, product_a)
        debt_sale = _sale(access_a, product_a, is_debt=True)

        sales = sales_service.list_sales(access_a, store_id=store_a.id, is_debt=True)
        assert [s.id for s in sales] == [debt_sale.id]

    def test_second_debt_for_sale_conflicts(self, db_session, access_a, product_a):
        sale = _sale(access_a, product_a, is_debt=True)
        with pytest.raises(ConflictError):
            debt_service.open_debt(access_a, sale_id=sale.id)


class TestSalesStats:

    def test_period_totals_debts_and_top_products(
        self, db_session, access_a, store_a, product_a, make_product
    ):
        other = make_product(store_a, name="Riz")
        _sale(access_a, product_a, quantity=3)
        _sale(access_a, product_a, quantity=1, is_debt=True)
        _sale(access_a, other, quantity=1)

        stats = sales_service.sales_stats(access_a, store_id=store_a.id, period="today")

        assert stats["total_sales"] == 3
        assert stats["total_amount_cents"] == 300 + 100 + 100
        assert stats["outstanding_debts_cents"] == 100
        assert [p["product_id"] for p in stats["top_products"]] == [product_a.id, other.id]
        assert stats["top_products"][0]["quantity_sold"] == 4
        assert stats["top_products"][0]["sale_count"] == 2

    def test_unknown_period_rejected(self, db_session, access_a, store_a):
        with pytest.raises(ValidationError):
            sales_service.sales_stats(access_a, store_id=store_a.id, period="decade")

    def test_other_store_denied(self, db_session, access_a, store_b):
        with pytest.raises(AccessDeniedError):
            sales_service.sales_stats(access_a, store_id=store_b.id)
