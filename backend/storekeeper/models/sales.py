from __future__ import annotations

from ..extensions import db
from storekeeper.time_utils import to_utc_z, utcnow
from .columns import new_uuid


SALE_TYPE_UNIT = "UNIT"
SALE_TYPE_PACKAGE = "PACKAGE"
SALE_TYPES = (SALE_TYPE_UNIT, SALE_TYPE_PACKAGE)

PAYMENT_TYPES = ("CASH", "MOBILE_MONEY", "BANK_TRANSFER", "CREDIT_CARD")


class Sale(db.Model):
    """
    Single-product sale.

    unit_price_cents is snapshotted from the product at sale time and
    total_amount_cents = unit_price_cents * quantity. After creation only the
    client metadata (name, phone, notes) may change.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sales_quantity_positive"),
        db.Index("ix_sales_store_created", "store_id", "created_at"),
        db.Index("ix_sales_store_updated", "store_id", "updated_at"),
        db.Index("ix_sales_store_product", "store_id", "product_id"),
        db.Index("ix_sales_store_seller", "store_id", "seller_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    sale_type = db.Column(db.String(16), nullable=False, default=SALE_TYPE_UNIT)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_amount_cents = db.Column(db.Integer, nullable=False)
    payment_type = db.Column(db.String(32), nullable=False, default="CASH")

    is_debt = db.Column(db.Boolean, nullable=False, default=False)
    client_name = db.Column(db.String(255), nullable=True)
    client_phone = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product")
    seller = db.relationship("User")
    debt = db.relationship("Debt", back_populates="sale", uselist=False)

    def to_dict(self, *, include_debt: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "seller_id": self.seller_id,
            "seller_name": self.seller.name if self.seller else None,
            "quantity": self.quantity,
            "sale_type": self.sale_type,
            "unit_price_cents": self.unit_price_cents,
            "total_amount_cents": self.total_amount_cents,
            "payment_type": self.payment_type,
            "is_debt": self.is_debt,
            "client_name": self.client_name,
            "client_phone": self.client_phone,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at, precise=True),
        }
        if include_debt:
            data["debt"] = self.debt.to_dict(include_payments=True) if self.debt else None
        return data
