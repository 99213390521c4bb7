# Overview: Pytest coverage for the debt ledger.

from datetime import timedelta

import pytest
from sqlalchemy import update

from storekeeper.errors import AccessDeniedError, PaymentExceedsRemainingError
from storekeeper.extensions import db
from storekeeper.models import Debt, DebtPayment
from storekeeper.services import debt_service, sales_service
from storekeeper.time_utils import utcnow
from storekeeper.validation import ValidationError


@pytest.fixture
def debt_a(db_session, access_a, product_a):
    """Debt of 200 from a two-unit credit sale in store A."""
    sale = sales_service.create_sale(
        access_a,
        product_id=product_a.id,
        quantity=2,
        sale_type="UNIT",
        payment_type="CASH",
        is_debt=True,
        client_name="Fatou",
    )
    return db.session.query(Debt).filter_by(sale_id=sale.id).one()


def _assert_balanced(debt):
    assert debt.remaining_amount_cents == debt.amount_cents - debt.paid_amount_cents
    assert 0 <= debt.paid_amount_cents <= debt.amount_cents


class TestPayments:

    def test_partial_then_full_then_rejected(self, db_session, access_a, debt_a):
        payment, debt = debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=150)
        assert payment.amount_cents == 150
        assert debt.paid_amount_cents == 150
        assert debt.remaining_amount_cents == 50
        assert debt.status == "PARTIAL"
        _assert_balanced(debt)

        _payment, debt = debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=50)
        assert debt.remaining_amount_cents == 0
        assert debt.status == "PAID"
        _assert_balanced(debt)

        with pytest.raises(PaymentExceedsRemainingError) as exc_info:
            debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=1)
        assert exc_info.value.details["remaining_amount_cents"] == 0
        assert db.session.query(DebtPayment).filter_by(debt_id=debt_a.id).count() == 2

    def test_overpayment_rejected_without_side_effects(self, db_session, access_a, debt_a):
        with pytest.raises(PaymentExceedsRemainingError):
            debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=201)

        debt = db.session.get(Debt, debt_a.id)
        assert debt.paid_amount_cents == 0
        assert debt.status == "PENDING"
        assert db.session.query(DebtPayment).count() == 0

    def test_balance_lowered_after_read_is_rejected(self, db_session, access_a, debt_a, monkeypatch):
        """A payment committed elsewhere after our read makes the guarded UPDATE miss."""
        real_pay = debt_service._add_payment_inner

        def _paid_elsewhere(*, debt, **kwargs):
            db.session.execute(
                update(Debt)
                .where(Debt.id == debt.id)
                .values(paid_amount_cents=150, remaining_amount_cents=50, status="PARTIAL")
                .execution_options(synchronize_session=False)
            )
            return real_pay(debt=debt, **kwargs)

        monkeypatch.setattr(debt_service, "_add_payment_inner", _paid_elsewhere)

        with pytest.raises(PaymentExceedsRemainingError) as exc_info:
            debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=100)

        assert exc_info.value.details["remaining_amount_cents"] == 50
        debt = db.session.get(Debt, debt_a.id)
        assert debt.paid_amount_cents == 0
        assert debt.remaining_amount_cents == 200
        assert debt.status == "PENDING"
        assert db.session.query(DebtPayment).count() == 0

    def test_non_positive_amount_rejected(self, db_session, access_a, debt_a):
        with pytest.raises(ValidationError):
            debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=0)

    def test_other_store_cannot_pay(self, db_session, access_b, debt_a):
        with pytest.raises(AccessDeniedError):
            debt_service.add_payment(access_b, debt_id=debt_a.id, amount_cents=10)


class TestOverdue:

    def test_overdue_is_derived_not_stored(self, db_session, access_a, store_a, debt_a):
        debt_service.update_debt(
            access_a, debt_id=debt_a.id, patch={"due_date": utcnow() - timedelta(days=1)}
        )
        debt = db.session.get(Debt, debt_a.id)

        assert debt.status == "PENDING"
        assert debt.to_dict()["status"] == "OVERDUE"
        assert [d.id for d in debt_service.overdue_debts(access_a, store_id=store_a.id)] == [debt_a.id]
        assert [d.id for d in debt_service.list_debts(access_a, store_id=store_a.id, status="OVERDUE")] == [debt_a.id]
        assert debt_service.list_debts(access_a, store_id=store_a.id, status="PENDING") == []

    def test_paid_debt_is_never_overdue(self, db_session, access_a, store_a, debt_a):
        debt_service.update_debt(
            access_a, debt_id=debt_a.id, patch={"due_date": utcnow() - timedelta(days=1)}
        )
        debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=200)

        assert debt_service.overdue_debts(access_a, store_id=store_a.id) == []
        assert db.session.get(Debt, debt_a.id).to_dict()["status"] == "PAID"


class TestMetadataAndStats:

    def test_update_cannot_touch_amounts(self, db_session, access_a, debt_a):
        with pytest.raises(ValidationError):
            debt_service.update_debt(access_a, debt_id=debt_a.id, patch={"paid_amount_cents": 200})

    def test_blank_client_name_falls_back(self, db_session, access_a, debt_a):
        debt = debt_service.update_debt(access_a, debt_id=debt_a.id, patch={"client_name": ""})
        assert debt.client_name == "Unknown"

    def test_stats(self, db_session, access_a, store_a, debt_a):
        debt_service.add_payment(access_a, debt_id=debt_a.id, amount_cents=50)

        stats = debt_service.debt_stats(access_a, store_id=store_a.id, period="today")
        assert stats["total"] == {"amount_cents": 200, "remaining_cents": 150, "count": 1}
        assert stats["paid"]["count"] == 0
        assert stats["payments"] == {"amount_cents": 50, "count": 1}
        assert stats["overdue_count"] == 0
