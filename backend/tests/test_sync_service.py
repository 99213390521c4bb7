# Overview: Pytest coverage for the offline sync reconciler.

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from storekeeper.extensions import db
from storekeeper.models import Debt, Product, Sale, StockMovement, SyncQueueItem
from storekeeper.services import sales_service, stock_service, sync_service
from storekeeper.time_utils import parse_iso_datetime, utcnow
from storekeeper.validation import ValidationError

BASE_TIME = datetime(2026, 3, 1, 8, 0, 0)


def _ts(seconds: int = 0) -> str:
    return (BASE_TIME + timedelta(seconds=seconds)).isoformat() + "Z"


def _item(table_name, action, record_id, data=None, seconds=0):
    return {
        "action": action,
        "table_name": table_name,
        "record_id": record_id,
        "data": data or {},
        "timestamp": _ts(seconds),
    }


def _out(product, record_id, quantity, seconds=0):
    return _item(
        "stock_movements", "CREATE", record_id,
        {"product_id": product.id, "type": "OUT", "quantity": quantity},
        seconds,
    )


class TestPush:

    def test_cross_store_item_fails_alone(self, db_session, access_a, store_b, product_a):
        """A foreign-store sale is reported unauthorized while the stock movement is applied."""
        results = sync_service.push_batch(access_a, [
            _item("sales", "CREATE", "sale-x", {
                "store_id": store_b.id,
                "product_id": product_a.id,
                "quantity": 1,
                "sale_type": "UNIT",
                "payment_type": "CASH",
            }),
            _item("stock_movements", "CREATE", "mv-1",
                  {"product_id": product_a.id, "type": "IN", "quantity": 4}, seconds=1),
        ])

        assert len(results) == 2
        assert results[0]["status"] == "error"
        assert results[0]["code"] == "UNAUTHORIZED"
        assert results[1]["status"] == "success"
        assert results[1]["record_id"] == "mv-1"

        assert db.session.get(Product, product_a.id).current_stock == 14
        assert db.session.get(StockMovement, "mv-1") is not None
        assert db.session.get(Sale, "sale-x") is None

    def test_results_follow_input_order(self, db_session, access_a, product_a):
        results = sync_service.push_batch(access_a, [
            _out(product_a, "mv-1", 1, seconds=1),
            _out(product_a, "mv-2", 50, seconds=2),
            _out(product_a, "mv-3", 1, seconds=3),
        ])

        assert [r["record_id"] for r in results] == ["mv-1", "mv-2", "mv-3"]
        assert [r["status"] for r in results] == ["success", "error", "success"]
        assert results[1]["code"] == "INSUFFICIENT_STOCK"
        assert db.session.get(Product, product_a.id).current_stock == 8

    def test_repushed_item_is_not_applied_twice(self, db_session, access_a, product_a):
        item = _out(product_a, "mv-1", 2)
        first = sync_service.push_batch(access_a, [item])
        second = sync_service.push_batch(access_a, [item])

        assert first == second
        assert db.session.get(Product, product_a.id).current_stock == 8
        assert db.session.query(SyncQueueItem).count() == 1

    def test_existing_record_reported_as_already_applied(self, db_session, access_a, product_a):
        sync_service.push_batch(access_a, [_out(product_a, "mv-1", 2)])
        results = sync_service.push_batch(access_a, [_out(product_a, "mv-1", 2, seconds=30)])

        assert results[0]["status"] == "success"
        assert results[0]["already_applied"] is True
        assert db.session.get(Product, product_a.id).current_stock == 8

    def test_record_id_owned_by_other_store_conflicts(self, db_session, access_a, access_b, product_a, product_b):
        sync_service.push_batch(access_a, [_out(product_a, "mv-shared", 1)])
        results = sync_service.push_batch(access_b, [_out(product_b, "mv-shared", 1)])

        assert results[0]["status"] == "error"
        assert results[0]["code"] == "CONFLICT"

    def test_unsupported_pair_rejected(self, db_session, access_a):
        results = sync_service.push_batch(access_a, [_item("stores", "CREATE", "s-1", {"name": "X"})])
        assert results[0]["status"] == "error"
        assert results[0]["code"] == "VALIDATION_ERROR"

    def test_malformed_envelope_rejected(self, db_session, access_a, product_a):
        bad = _out(product_a, "mv-1", 1)
        bad["timestamp"] = "yesterday"
        results = sync_service.push_batch(access_a, [bad])

        assert results[0]["status"] == "error"
        assert "sync_item_id" not in results[0]
        assert db.session.query(SyncQueueItem).count() == 0

    def test_unknown_data_field_rejected(self, db_session, access_a, product_a):
        results = sync_service.push_batch(access_a, [
            _item("products", "UPDATE", product_a.id, {"current_stock": 99}),
        ])
        assert results[0]["status"] == "error"
        assert db.session.get(Product, product_a.id).current_stock == 10

    def test_oversized_batch_rejected(self, db_session, access_a, product_a):
        items = [_out(product_a, f"mv-{i}", 1, seconds=i) for i in range(201)]
        with pytest.raises(ValidationError):
            sync_service.push_batch(access_a, items)

    def test_product_lifecycle(self, db_session, access_a, store_a):
        results = sync_service.push_batch(access_a, [
            _item("products", "CREATE", "prod-1", {
                "name": "Savon",
                "category": "Hygiène",
                "units_per_package": 12,
                "package_purchase_price_cents": 1200,
                "unit_sale_price_cents": 150,
                "package_sale_price_cents": 1600,
                "initial_stock": 24,
            }),
            _item("products", "UPDATE", "prod-1", {"unit_sale_price_cents": 175}, seconds=1),
            _item("products", "DELETE", "prod-1", seconds=2),
        ])

        assert [r["status"] for r in results] == ["success", "success", "success"]
        product = db.session.get(Product, "prod-1")
        assert product.store_id == store_a.id
        assert product.current_stock == 24
        assert product.unit_sale_price_cents == 175
        assert product.is_active is False

    def test_sale_debt_and_payment(self, db_session, access_a, product_a):
        results = sync_service.push_batch(access_a, [
            _item("sales", "CREATE", "sale-1", {
                "product_id": product_a.id,
                "quantity": 2,
                "sale_type": "UNIT",
                "payment_type": "CASH",
            }),
            _item("debts", "CREATE", "debt-1", {"sale_id": "sale-1", "client_name": "Ibrahima"}, seconds=1),
            _item("debt_payments", "CREATE", "pay-1", {"debt_id": "debt-1", "amount_cents": 50}, seconds=2),
        ])

        assert [r["status"] for r in results] == ["success", "success", "success"]
        debt = db.session.get(Debt, "debt-1")
        assert debt.amount_cents == 200
        assert debt.remaining_amount_cents == 150
        assert debt.status == "PARTIAL"
        assert db.session.get(Sale, "sale-1").is_debt is True

    def test_movement_cannot_borrow_a_sale_reference(self, db_session, access_a, product_a):
        sale = sales_service.create_sale(
            access_a, product_id=product_a.id, quantity=1, sale_type="UNIT", payment_type="CASH"
        )
        results = sync_service.push_batch(access_a, [_item(
            "stock_movements", "CREATE", "mv-ref",
            {"product_id": product_a.id, "type": "OUT", "quantity": 1, "reference": sale.id},
        )])

        assert results[0]["code"] == "VALIDATION_ERROR"
        assert db.session.query(StockMovement).filter_by(reference=sale.id).count() == 1
        assert db.session.get(Product, product_a.id).current_stock == 9


def _force_processing(item_id, *, age_seconds, attempts=None):
    values = {"status": "PROCESSING", "updated_at": utcnow() - timedelta(seconds=age_seconds)}
    if attempts is not None:
        values["attempts"] = attempts
    db.session.execute(
        update(SyncQueueItem)
        .where(SyncQueueItem.id == item_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


class TestProcessingLease:

    def test_fresh_claim_blocks_repush(self, db_session, access_a, product_a):
        item_id = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 12)])[0]["sync_item_id"]
        _force_processing(item_id, age_seconds=0)

        again = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 12)])
        assert again[0]["code"] == "CONFLICT"
        assert db.session.get(SyncQueueItem, item_id).status == "PROCESSING"

    def test_expired_claim_is_taken_back_on_repush(self, db_session, access_a, product_a):
        item_id = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 12)])[0]["sync_item_id"]
        _force_processing(item_id, age_seconds=3600)
        stock_service.apply_movement(access_a, product_id=product_a.id, movement_type="IN", quantity=5)

        again = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 12)])

        assert again[0]["status"] == "success"
        item = db.session.get(SyncQueueItem, item_id)
        assert item.status == "COMPLETED"
        assert item.attempts == 2
        assert db.session.get(Product, product_a.id).current_stock == 3

    def test_expired_claim_is_retried(self, db_session, access_a, product_a):
        item_id = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 12)])[0]["sync_item_id"]
        _force_processing(item_id, age_seconds=3600)

        retried = sync_service.retry_failed_items(access_a)

        assert [r["sync_item_id"] for r in retried["results"]] == [item_id]
        assert db.session.get(SyncQueueItem, item_id).attempts == 2

    def test_expired_claim_at_cap_is_stuck(self, db_session, access_a, product_a):
        item_id = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 12)])[0]["sync_item_id"]
        _force_processing(item_id, age_seconds=3600, attempts=3)

        status = sync_service.sync_status(access_a)
        assert status["counts"]["PROCESSING"] == 0
        assert status["stuck_count"] == 1
        assert sync_service.retry_failed_items(access_a)["results"] == []
        assert db.session.get(SyncQueueItem, item_id).attempts == 3

    def test_lost_claim_rolls_back_the_mutation(self, db_session, access_a, product_a, monkeypatch):
        """If the claim is gone by commit time the applied change is discarded."""
        real_parse = sync_service.parse_sync_operation

        def _claim_taken(*args, **kwargs):
            db.session.execute(
                update(SyncQueueItem)
                .values(status="FAILED", error="Processing interrupted")
                .execution_options(synchronize_session=False)
            )
            return real_parse(*args, **kwargs)

        monkeypatch.setattr(sync_service, "parse_sync_operation", _claim_taken)

        results = sync_service.push_batch(access_a, [_out(product_a, "mv-late", 2)])

        assert results[0]["code"] == "CONFLICT"
        assert db.session.get(Product, product_a.id).current_stock == 10
        assert db.session.get(StockMovement, "mv-late") is None


class TestRetry:

    def test_attempt_cap(self, db_session, access_a, product_a):
        """A permanently failing item is tried max_attempts times and then reported stuck."""
        results = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 50)])
        item_id = results[0]["sync_item_id"]
        assert results[0]["attempts"] == 1

        for expected in (2, 3):
            retried = sync_service.retry_failed_items(access_a)
            assert retried["results"][0]["attempts"] == expected
            assert retried["stuck"] == []

        final = sync_service.retry_failed_items(access_a)
        assert final["results"] == []
        assert [s["id"] for s in final["stuck"]] == [item_id]

        item = db.session.get(SyncQueueItem, item_id)
        assert item.attempts == 3
        assert item.status == "FAILED"
        assert item.is_stuck

        # Re-pushing a stuck item does not run it again
        again = sync_service.push_batch(access_a, [_out(product_a, "mv-big", 50)])
        assert again[0]["code"] == "CONFLICT"
        assert db.session.get(SyncQueueItem, item_id).attempts == 3

    def test_retry_succeeds_once_cause_is_fixed(self, db_session, access_a, product_a):
        sync_service.push_batch(access_a, [_out(product_a, "mv-big", 12)])
        stock_service.apply_movement(access_a, product_id=product_a.id, movement_type="IN", quantity=5)

        retried = sync_service.retry_failed_items(access_a)
        assert retried["results"][0]["status"] == "success"
        assert db.session.get(Product, product_a.id).current_stock == 3
        assert db.session.query(SyncQueueItem).one().status == "COMPLETED"

    def test_status_reports_counts(self, db_session, access_a, product_a):
        sync_service.push_batch(access_a, [_out(product_a, "mv-1", 1), _out(product_a, "mv-2", 99, seconds=1)])

        status = sync_service.sync_status(access_a)
        assert status["counts"]["COMPLETED"] == 1
        assert status["counts"]["FAILED"] == 1
        assert status["stuck_count"] == 0


class TestPull:

    def test_scoped_to_callers_store(self, db_session, access_a, product_a, product_b):
        result = sync_service.pull_changes(access_a)

        ids = {c["record_id"] for c in result["changes"]}
        assert product_a.id in ids
        assert product_b.id not in ids
        assert result["has_more"] is False
        assert all(c["action"] == "UPDATE" for c in result["changes"])

    def test_admin_sees_all_stores(self, db_session, admin_access, product_a, product_b):
        ids = {c["record_id"] for c in sync_service.pull_changes(admin_access)["changes"]}
        assert {product_a.id, product_b.id} <= ids

    def test_since_excludes_older_rows(self, db_session, access_a, product_a):
        cursor = sync_service.pull_changes(access_a)["timestamp"]
        assert sync_service.pull_changes(access_a, since=parse_iso_datetime(cursor))["changes"] == []

        stock_service.apply_movement(access_a, product_id=product_a.id, movement_type="IN", quantity=1)
        changes = sync_service.pull_changes(access_a, since=parse_iso_datetime(cursor))["changes"]
        assert [c["record_id"] for c in changes] == [product_a.id]

    def test_paging_covers_every_row_once(self, db_session, access_a, store_a, make_product):
        created = {make_product(store_a, name=f"Produit {i}").id for i in range(5)}

        seen = []
        since = None
        for _ in range(10):
            page = sync_service.pull_changes(access_a, since=since, limit=2)
            seen.extend(c["record_id"] for c in page["changes"])
            since = parse_iso_datetime(page["timestamp"])
            if not page["has_more"]:
                break

        assert sorted(seen) == sorted(created)

    def test_rows_sharing_boundary_stay_together(self, db_session, access_a, store_a, make_product):
        first = make_product(store_a, name="A")
        second = make_product(store_a, name="B")
        same_time = datetime(2026, 3, 1, 12, 0, 0)
        db.session.execute(
            update(Product)
            .where(Product.id.in_([first.id, second.id]))
            .values(updated_at=same_time)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        page = sync_service.pull_changes(access_a, limit=1)
        assert {c["record_id"] for c in page["changes"]} == {first.id, second.id}
        assert page["has_more"] is True

    @pytest.mark.parametrize("limit", [0, -5])
    def test_non_positive_limit_rejected(self, db_session, access_a, product_a, limit):
        with pytest.raises(ValidationError):
            sync_service.pull_changes(access_a, limit=limit)

    def test_limit_is_capped_by_config(self, app, db_session, access_a, store_a, make_product, monkeypatch):
        monkeypatch.setitem(app.config, "SYNC_PULL_LIMIT", 2)
        for i in range(5):
            product = make_product(store_a, name=f"Produit {i}")
            db.session.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(updated_at=BASE_TIME + timedelta(seconds=i))
                .execution_options(synchronize_session=False)
            )
        db.session.commit()

        page = sync_service.pull_changes(access_a, limit=1_000_000)

        assert page["has_more"] is True
        assert len(page["changes"]) == 2
