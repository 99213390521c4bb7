# Overview: Pytest coverage for the stock ledger.

import pytest
from sqlalchemy import update

from storekeeper.errors import AccessDeniedError, InsufficientStockError, NotFoundError
from storekeeper.extensions import db
from storekeeper.models import Product, StockMovement
from storekeeper.services import sales_service, stock_service
from storekeeper.validation import ValidationError


def _movements(product_id):
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.created_at.asc())
        .all()
    )


class TestApplyMovement:

    def test_initial_stock_recorded_as_in_movement(self, db_session, product_a):
        """Product creation with initial stock leaves one IN movement at purchase cost."""
        movements = _movements(product_a.id)
        assert len(movements) == 1
        assert movements[0].type == "IN"
        assert movements[0].quantity == 10
        assert movements[0].reason == "Initial stock"
        # 400 per package of 5 -> 80 per unit
        assert movements[0].unit_price_cents == 80
        assert movements[0].total_value_cents == 800

    def test_in_movement_increases_stock(self, db_session, access_a, product_a):
        movement = stock_service.apply_movement(
            access_a, product_id=product_a.id, movement_type="IN", quantity=5, reason="Delivery"
        )
        assert movement.stock_delta == 5
        assert movement.stock_after == 15
        assert db.session.get(Product, product_a.id).current_stock == 15

    def test_out_movement_beyond_stock_is_rejected(self, db_session, access_a, product_a):
        """Nothing is written when an OUT would drive stock negative."""
        with pytest.raises(InsufficientStockError):
            stock_service.apply_movement(access_a, product_id=product_a.id, movement_type="OUT", quantity=11)

        assert db.session.get(Product, product_a.id).current_stock == 10
        assert len(_movements(product_a.id)) == 1

    def test_stock_drained_after_read_is_rejected(self, db_session, access_a, product_a, monkeypatch):
        """Another writer lowers the level between our read and the conditional UPDATE."""
        real_apply = stock_service._apply_movement_inner

        def _drained(*, product, **kwargs):
            db.session.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(current_stock=2)
                .execution_options(synchronize_session=False)
            )
            return real_apply(product=product, **kwargs)

        monkeypatch.setattr(stock_service, "_apply_movement_inner", _drained)

        with pytest.raises(InsufficientStockError) as exc_info:
            stock_service.apply_movement(access_a, product_id=product_a.id, movement_type="OUT", quantity=5)

        assert exc_info.value.details["available"] == 2
        assert db.session.get(Product, product_a.id).current_stock == 10
        assert len(_movements(product_a.id)) == 1

    def test_sale_id_is_not_a_free_reference(self, db_session, access_a, product_a):
        sale = sales_service.create_sale(
            access_a, product_id=product_a.id, quantity=1, sale_type="UNIT", payment_type="CASH"
        )
        with pytest.raises(ValidationError):
            stock_service.apply_movement(
                access_a, product_id=product_a.id, movement_type="IN", quantity=1, reference=sale.id
            )

        assert db.session.query(StockMovement).filter_by(reference=sale.id).count() == 1
        assert db.session.get(Product, product_a.id).current_stock == 9

    def test_force_clamps_to_zero(self, db_session, access_a, product_a):
        movement = stock_service.apply_movement(
            access_a, product_id=product_a.id, movement_type="OUT", quantity=25, force=True
        )
        assert movement.quantity == 10
        assert movement.stock_delta == -10
        assert movement.stock_after == 0
        assert db.session.get(Product, product_a.id).current_stock == 0

    def test_adjustment_uses_signed_delta(self, db_session, access_a, product_a):
        down = stock_service.apply_movement(
            access_a, product_id=product_a.id, movement_type="ADJUSTMENT", signed_delta=-4, reason="Breakage"
        )
        assert down.quantity == 4
        assert down.stock_delta == -4
        assert down.stock_after == 6

        up = stock_service.apply_movement(
            access_a, product_id=product_a.id, movement_type="ADJUSTMENT", signed_delta=2
        )
        assert up.stock_delta == 2
        assert up.stock_after == 8

    def test_negative_adjustment_beyond_stock_is_rejected(self, db_session, access_a, product_a):
        with pytest.raises(InsufficientStockError):
            stock_service.apply_movement(
                access_a, product_id=product_a.id, movement_type="ADJUSTMENT", signed_delta=-11
            )

    def test_transfer_decrements_stock(self, db_session, access_a, product_a):
        movement = stock_service.apply_movement(
            access_a, product_id=product_a.id, movement_type="TRANSFER", quantity=3
        )
        assert movement.stock_delta == -3
        assert db.session.get(Product, product_a.id).current_stock == 7

    def test_cross_store_product_is_denied(self, db_session, access_a, product_b):
        with pytest.raises(AccessDeniedError):
            stock_service.apply_movement(access_a, product_id=product_b.id, movement_type="IN", quantity=1)

    def test_foreign_store_id_is_denied(self, db_session, access_a, product_a, store_b):
        with pytest.raises(AccessDeniedError):
            stock_service.apply_movement(
                access_a, product_id=product_a.id, movement_type="IN", quantity=1, store_id=store_b.id
            )

    def test_unknown_product(self, db_session, access_a):
        with pytest.raises(NotFoundError):
            stock_service.apply_movement(access_a, product_id="missing", movement_type="IN", quantity=1)


class TestBulkAdjust:

    def test_sets_absolute_level(self, db_session, access_a, store_a, product_a):
        """One ADJUSTMENT of magnitude 3 takes stock from 10 to 7."""
        results = stock_service.bulk_adjust(
            access_a, store_id=store_a.id, adjustments=[{"product_id": product_a.id, "new_stock": 7}]
        )

        assert len(results) == 1
        assert results[0]["status"] == "adjusted"
        assert results[0]["previous_stock"] == 10
        assert results[0]["new_stock"] == 7
        assert results[0]["movement"]["type"] == "ADJUSTMENT"
        assert results[0]["movement"]["quantity"] == 3
        assert results[0]["movement"]["reason"] == "Bulk adjustment"
        assert db.session.get(Product, product_a.id).current_stock == 7

    def test_unchanged_product_emits_no_movement(self, db_session, access_a, store_a, product_a):
        results = stock_service.bulk_adjust(
            access_a, store_id=store_a.id, adjustments=[{"product_id": product_a.id, "new_stock": 10}]
        )
        assert results[0]["status"] == "unchanged"
        assert results[0]["movement"] is None
        assert len(_movements(product_a.id)) == 1

    def test_foreign_product_fails_whole_batch(
        self, db_session, admin_access, store_a, product_a, product_b
    ):
        """A product from another store aborts the batch; earlier entries are rolled back."""
        with pytest.raises(NotFoundError):
            stock_service.bulk_adjust(
                admin_access,
                store_id=store_a.id,
                adjustments=[
                    {"product_id": product_a.id, "new_stock": 3},
                    {"product_id": product_b.id, "new_stock": 1},
                ],
            )

        assert db.session.get(Product, product_a.id).current_stock == 10
        assert db.session.get(Product, product_b.id).current_stock == 10

    def test_negative_target_rejected(self, db_session, access_a, store_a, product_a):
        with pytest.raises(ValidationError):
            stock_service.bulk_adjust(
                access_a, store_id=store_a.id, adjustments=[{"product_id": product_a.id, "new_stock": -1}]
            )

    def test_seller_cannot_adjust_other_store(self, db_session, access_a, store_b, product_b):
        with pytest.raises(AccessDeniedError):
            stock_service.bulk_adjust(
                access_a, store_id=store_b.id, adjustments=[{"product_id": product_b.id, "new_stock": 1}]
            )


class TestQueries:

    def test_list_movements_filters_by_type(self, db_session, access_a, store_a, product_a):
        stock_service.apply_movement(access_a, product_id=product_a.id, movement_type="OUT", quantity=2)

        outs = stock_service.list_movements(access_a, store_id=store_a.id, movement_type="OUT")
        assert [m.type for m in outs] == ["OUT"]

    def test_summary_counts_by_type(self, db_session, access_a, store_a, product_a):
        stock_service.apply_movement(access_a, product_id=product_a.id, movement_type="OUT", quantity=9)

        summary = stock_service.stock_summary(access_a, store_id=store_a.id, period="today")
        assert summary["movements"]["IN"]["quantity"] == 10
        assert summary["movements"]["OUT"]["quantity"] == 9
        assert summary["total_units"] == 1
        assert summary["low_stock_count"] == 1

    def test_summary_rejects_unknown_period(self, db_session, access_a, store_a):
        with pytest.raises(ValidationError):
            stock_service.stock_summary(access_a, store_id=store_a.id, period="decade")
