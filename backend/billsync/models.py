# backend/billsync/models.py
from __future__ import annotations
from .extensions import db


BILL_STATUSES = ("active", "archived", "returned")


class Bill(db.Model):
    """
    Purchase bill: header record for a batch of products bought from one vendor.

    Aggregates (total_*, product_count) are derived from the bill's products and
    rewritten by the totals recalculation; they are not a live constraint.
    """
    __tablename__ = "bills"

    # Store-assigned opaque id (uuid4 hex)
    id = db.Column(db.String(32), primary_key=True)
    bill_number = db.Column(db.String(20), nullable=False, unique=True, index=True)
    date = db.Column(db.DateTime, nullable=False, index=True)
    vendor = db.Column(db.String(100), nullable=False, index=True)
    notes = db.Column(db.String(500), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)

    total_quantity = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_profit = db.Column(db.Float, nullable=False, default=0.0)
    product_count = db.Column(db.Integer, nullable=False, default=0)

    # Set by the document store with microsecond precision; conflict resolution compares these
    created_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<Bill id={self.id} bill_number={self.bill_number!r} vendor={self.vendor!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bill_number": self.bill_number,
            "date": self.date,
            "vendor": self.vendor,
            "notes": self.notes,
            "status": self.status,
            "total_quantity": self.total_quantity,
            "total_amount": self.total_amount,
            "total_profit": self.total_profit,
            "product_count": self.product_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Product(db.Model):
    """
    Shop product line. bill_id/bill_number are a nullable back-reference:
    a product without one is orphaned.
    """
    __tablename__ = "shop_products"
    __table_args__ = (
        db.Index("ix_shop_products_bill_created", "bill_id", "created_at"),
    )

    id = db.Column(db.String(32), primary_key=True)
    bill_id = db.Column(db.String(32), db.ForeignKey("bills.id"), nullable=True, index=True)
    bill_number = db.Column(db.String(20), nullable=True, index=True)

    product_name = db.Column(db.String(100), nullable=False)
    category = db.Column(db.String(50), nullable=True)
    vendor = db.Column(db.String(100), nullable=True)

    mrp = db.Column(db.Float, nullable=False, default=0.0)
    total_quantity = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    # Derived: price_per_piece = total_amount / total_quantity, profit_per_piece = mrp - price_per_piece
    price_per_piece = db.Column(db.Float, nullable=False, default=0.0)
    profit_per_piece = db.Column(db.Float, nullable=False, default=0.0)

    created_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<Product id={self.id} product_name={self.product_name!r} bill_id={self.bill_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bill_id": self.bill_id,
            "bill_number": self.bill_number,
            "product_name": self.product_name,
            "category": self.category,
            "vendor": self.vendor,
            "mrp": self.mrp,
            "total_quantity": self.total_quantity,
            "total_amount": self.total_amount,
            "price_per_piece": self.price_per_piece,
            "profit_per_piece": self.profit_per_piece,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
