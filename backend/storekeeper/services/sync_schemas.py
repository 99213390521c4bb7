"""
Sync Operation Schemas

Every pushed item is parsed into exactly one operation class, chosen by its
(table_name, action) pair. The set of pairs is closed: anything not listed in
SYNC_SCHEMAS is rejected with a ValidationError before a handler runs.

Each operation:
- validates its data against the same ModelValidationPolicy the HTTP routes use
- resolves and checks the target store (data.store_id, default: caller's store)
- applies itself through the ledgers' *_inner functions, without committing
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..errors import ConflictError, NotFoundError
from ..extensions import db
from ..models import Debt, DebtPayment, Product, Sale, StockMovement
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    coerce_int,
    enforce_rules_debt_payment,
    enforce_rules_product,
    enforce_rules_sale,
    enforce_rules_stock_movement,
    validate_payload,
)
from .concurrency import lock_for_update
from .debt_service import (
    DEBT_CREATE_POLICY,
    DEBT_UPDATE_POLICY,
    PAYMENT_POLICY,
    _add_payment_inner,
    _open_debt_inner,
    _update_debt_inner,
)
from .products_service import (
    PRODUCT_CREATE_POLICY,
    PRODUCT_UPDATE_POLICY,
    _create_product_inner,
    _deactivate_product_inner,
    _update_product_inner,
)
from .sales_service import SALE_CREATE_POLICY, SALE_UPDATE_POLICY, _create_sale_inner, _update_sale_inner
from .stock_service import (
    MOVEMENT_POLICY,
    _apply_movement_inner,
    _load_product_in_store,
    check_client_reference,
)
from .tenant_service import AccessContext, require_record_access, require_store_access


@dataclass
class SyncOperation:
    table_name: ClassVar[str]
    action: ClassVar[str]
    model: ClassVar[Any]
    policy: ClassVar[ModelValidationPolicy | None] = None
    partial: ClassVar[bool] = False

    record_id: str
    store_id: int
    fields: dict = field(default_factory=dict)

    @staticmethod
    def rules(fields: dict) -> None:
        return None

    @classmethod
    def parse(cls, record_id: str, data: dict, access: AccessContext) -> "SyncOperation":
        data = dict(data or {})
        client_id = data.pop("id", None)
        if client_id is not None and str(client_id) != record_id:
            raise ValidationError("data.id does not match record_id")

        raw_store_id = data.pop("store_id", None)
        store_id = coerce_int("store_id", raw_store_id) if raw_store_id is not None else access.store_id
        if store_id is None:
            raise ValidationError("store_id is required")
        require_store_access(access, store_id)

        fields = {}
        if cls.policy is not None:
            if "store_id" in cls.policy.writable_fields:
                data["store_id"] = store_id
            fields = validate_payload(model=cls.model, payload=data, policy=cls.policy, partial=cls.partial)
            fields.pop("store_id", None)
            cls.rules(fields)
        elif data:
            raise ValidationError(f"{cls.table_name} {cls.action} takes no data")
        return cls(record_id=record_id, store_id=store_id, fields=fields)

    def apply(self, access: AccessContext) -> dict:
        raise NotImplementedError

    def _existing(self):
        """
        CREATE idempotency: an id already present in this store is reported
        as applied, an id owned by another store is a conflict.
        """
        existing = db.session.get(self.model, self.record_id)
        if existing is None:
            return None
        owner = getattr(existing, "store_id", None)
        if owner is None and isinstance(existing, DebtPayment):
            owner = existing.debt.store_id
        if owner != self.store_id:
            raise ConflictError(
                "Record id already used in another store",
                {"table_name": self.table_name, "record_id": self.record_id},
            )
        return existing

    def _check_record_store(self, record) -> None:
        if record.store_id != self.store_id:
            raise ConflictError(
                "Record belongs to a different store",
                {"table_name": self.table_name, "record_id": self.record_id},
            )


def _already_applied(record) -> dict:
    return {"already_applied": True, "data": record.to_dict()}


def _applied(record) -> dict:
    return {"already_applied": False, "data": record.to_dict()}


class ProductCreate(SyncOperation):
    table_name = "products"
    action = "CREATE"
    model = Product
    policy = PRODUCT_CREATE_POLICY

    @staticmethod
    def rules(fields: dict) -> None:
        enforce_rules_product(fields)

    def apply(self, access: AccessContext) -> dict:
        existing = self._existing()
        if existing is not None:
            return _already_applied(existing)
        patch = {**self.fields, "store_id": self.store_id}
        return _applied(_create_product_inner(access=access, patch=patch, product_id=self.record_id))


class ProductUpdate(SyncOperation):
    table_name = "products"
    action = "UPDATE"
    model = Product
    policy = PRODUCT_UPDATE_POLICY
    partial = True

    @staticmethod
    def rules(fields: dict) -> None:
        enforce_rules_product(fields)

    def apply(self, access: AccessContext) -> dict:
        product = require_record_access(access, db.session.get(Product, self.record_id), "Product")
        self._check_record_store(product)
        return _applied(_update_product_inner(access=access, product_id=self.record_id, patch=self.fields))


class ProductDelete(SyncOperation):
    table_name = "products"
    action = "DELETE"
    model = Product

    def apply(self, access: AccessContext) -> dict:
        product = require_record_access(access, db.session.get(Product, self.record_id), "Product")
        self._check_record_store(product)
        return _applied(_deactivate_product_inner(access=access, product_id=self.record_id))


class SaleCreate(SyncOperation):
    table_name = "sales"
    action = "CREATE"
    model = Sale
    policy = SALE_CREATE_POLICY

    @staticmethod
    def rules(fields: dict) -> None:
        enforce_rules_sale(fields)

    def apply(self, access: AccessContext) -> dict:
        existing = self._existing()
        if existing is not None:
            return _already_applied(existing)
        sale = _create_sale_inner(access=access, store_id=self.store_id, sale_id=self.record_id, **self.fields)
        return _applied(sale)


class SaleUpdate(SyncOperation):
    table_name = "sales"
    action = "UPDATE"
    model = Sale
    policy = SALE_UPDATE_POLICY
    partial = True

    def apply(self, access: AccessContext) -> dict:
        sale = require_record_access(access, db.session.get(Sale, self.record_id), "Sale")
        self._check_record_store(sale)
        return _applied(_update_sale_inner(access=access, sale_id=self.record_id, patch=self.fields))


class StockMovementCreate(SyncOperation):
    table_name = "stock_movements"
    action = "CREATE"
    model = StockMovement
    policy = MOVEMENT_POLICY

    @staticmethod
    def rules(fields: dict) -> None:
        enforce_rules_stock_movement(fields)

    def apply(self, access: AccessContext) -> dict:
        existing = self._existing()
        if existing is not None:
            return _already_applied(existing)
        fields = self.fields
        check_client_reference(fields.get("reference"))
        product = _load_product_in_store(fields["product_id"], access, store_id=self.store_id, lock=True)
        movement = _apply_movement_inner(
            product=product,
            movement_type=fields["type"],
            user_id=access.user_id,
            quantity=fields.get("quantity"),
            signed_delta=fields.get("signed_delta"),
            unit_price_cents=fields.get("unit_price_cents"),
            reason=fields.get("reason"),
            reference=fields.get("reference"),
            force=bool(fields.get("force")),
            movement_id=self.record_id,
        )
        return _applied(movement)


class DebtCreate(SyncOperation):
    table_name = "debts"
    action = "CREATE"
    model = Debt
    policy = DEBT_CREATE_POLICY

    def apply(self, access: AccessContext) -> dict:
        existing = self._existing()
        if existing is not None:
            return _already_applied(existing)
        sale = lock_for_update(db.session.query(Sale).filter_by(id=self.fields["sale_id"])).first()
        require_record_access(access, sale, "Sale")
        self._check_record_store(sale)
        debt = _open_debt_inner(
            sale=sale,
            client_name=self.fields.get("client_name"),
            client_phone=self.fields.get("client_phone"),
            due_date=self.fields.get("due_date"),
            notes=self.fields.get("notes"),
            debt_id=self.record_id,
        )
        return _applied(debt)


class DebtUpdate(SyncOperation):
    table_name = "debts"
    action = "UPDATE"
    model = Debt
    policy = DEBT_UPDATE_POLICY
    partial = True

    def apply(self, access: AccessContext) -> dict:
        debt = require_record_access(access, db.session.get(Debt, self.record_id), "Debt")
        self._check_record_store(debt)
        return _applied(_update_debt_inner(access=access, debt_id=self.record_id, patch=self.fields))


class DebtPaymentCreate(SyncOperation):
    table_name = "debt_payments"
    action = "CREATE"
    model = DebtPayment
    policy = PAYMENT_POLICY

    @staticmethod
    def rules(fields: dict) -> None:
        if not fields.get("debt_id"):
            raise ValidationError("debt_id is required")
        enforce_rules_debt_payment(fields)

    def apply(self, access: AccessContext) -> dict:
        existing = self._existing()
        if existing is not None:
            return _already_applied(existing)
        debt = lock_for_update(db.session.query(Debt).filter_by(id=self.fields["debt_id"])).first()
        if debt is None:
            raise NotFoundError("Debt not found")
        require_record_access(access, debt, "Debt")
        self._check_record_store(debt)
        payment = _add_payment_inner(
            debt=debt,
            amount_cents=self.fields["amount_cents"],
            payment_type=self.fields.get("payment_type") or "CASH",
            notes=self.fields.get("notes"),
            user_id=access.user_id,
            payment_id=self.record_id,
        )
        return {"already_applied": False, "data": payment.to_dict(), "debt": debt.to_dict()}


SYNC_SCHEMAS: dict[tuple[str, str], type[SyncOperation]] = {
    (op.table_name, op.action): op
    for op in (
        ProductCreate,
        ProductUpdate,
        ProductDelete,
        SaleCreate,
        SaleUpdate,
        StockMovementCreate,
        DebtCreate,
        DebtUpdate,
        DebtPaymentCreate,
    )
}


def parse_sync_operation(
    table_name: str,
    action: str,
    record_id: str,
    data: dict | None,
    access: AccessContext,
) -> SyncOperation:
    schema = SYNC_SCHEMAS.get((table_name, action))
    if schema is None:
        raise ValidationError(f"Unsupported sync operation: {action} on {table_name}")
    if data is not None and not isinstance(data, dict):
        raise ValidationError("data must be an object")
    return schema.parse(record_id, data, access)
