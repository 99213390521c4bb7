from __future__ import annotations

from ..extensions import db
from storekeeper.time_utils import to_utc_z, utcnow
from .columns import new_uuid


MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_TRANSFER = "TRANSFER"
MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUSTMENT, MOVEMENT_TRANSFER)


class Product(db.Model):
    """
    Product master data plus the live stock level.

    MULTI-TENANT: Products are scoped to stores via store_id.

    current_stock is only ever written by the stock ledger
    (services/stock_service.py), which appends one StockMovement per change.
    Metadata (name, prices, alerts) may be edited directly.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("current_stock >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("units_per_package >= 1", name="ck_products_units_per_package"),
        db.Index("ix_products_store_name", "store_id", "name"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        db.Index("ix_products_store_updated", "store_id", "updated_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(120), nullable=False)
    barcode = db.Column(db.String(128), nullable=True)

    units_per_package = db.Column(db.Integer, nullable=False, default=1)
    current_stock = db.Column(db.Integer, nullable=False, default=0)

    # Authoritative storage in cents (clients only format for display)
    package_purchase_price_cents = db.Column(db.Integer, nullable=False, default=0)
    unit_sale_price_cents = db.Column(db.Integer, nullable=False, default=0)
    package_sale_price_cents = db.Column(db.Integer, nullable=False, default=0)

    min_stock_alert = db.Column(db.Integer, nullable=False, default=5)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock <= self.min_stock_alert

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} store_id={self.store_id} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "barcode": self.barcode,
            "units_per_package": self.units_per_package,
            "current_stock": self.current_stock,
            "package_purchase_price_cents": self.package_purchase_price_cents,
            "unit_sale_price_cents": self.unit_sale_price_cents,
            "package_sale_price_cents": self.package_sale_price_cents,
            "min_stock_alert": self.min_stock_alert,
            "is_low_stock": self.is_low_stock,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at, precise=True),
        }


class StockMovement(db.Model):
    """
    Append-only stock audit entry.

    quantity is always the non-negative magnitude; stock_delta is the signed
    change that was applied and stock_after the resulting level. There is no
    update or delete path for this table.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_movements_quantity"),
        db.Index("ix_stock_movements_store_created", "store_id", "created_at"),
        db.Index("ix_stock_movements_store_type_created", "store_id", "type", "created_at"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    stock_delta = db.Column(db.Integer, nullable=False)
    stock_after = db.Column(db.Integer, nullable=False)

    unit_price_cents = db.Column(db.Integer, nullable=True)
    total_value_cents = db.Column(db.Integer, nullable=True)

    reason = db.Column(db.String(255), nullable=True)
    # Sale id for sale-driven movements
    reference = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))
    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "type": self.type,
            "quantity": self.quantity,
            "stock_delta": self.stock_delta,
            "stock_after": self.stock_after,
            "unit_price_cents": self.unit_price_cents,
            "total_value_cents": self.total_value_cents,
            "reason": self.reason,
            "reference": self.reference,
            "created_at": to_utc_z(self.created_at),
        }
