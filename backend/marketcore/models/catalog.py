from __future__ import annotations

from ..extensions import db
from marketcore.time_utils import to_utc_z

DELIVERY_PLATFORM = "PLATFORM"
DELIVERY_SELLER = "SELLER"

VALID_DELIVERY_TYPES = [DELIVERY_PLATFORM, DELIVERY_SELLER]


class Product(db.Model):
    """
    Sellable item with either a flat stock counter or per-variant stock.

    STOCK DESIGN:
    - Products without variants use count_in_stock directly.
    - Products with variants keep stock on ProductVariant rows; count_in_stock
      is then a cached sum that must be resynced after every variant mutation.
    - Stock is never negative (check constraint + service checks).

    version_id is the optimistic lock: two checkouts that read the same stock
    cannot both write it back.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("count_in_stock >= 0", name="ck_products_stock_nonnegative"),
        db.Index("ix_products_seller", "seller_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    count_in_stock = db.Column(db.Integer, nullable=False, default=0)

    # Who fulfils delivery; platform delivery carries an extra settlement fee
    delivery_type = db.Column(db.String(16), nullable=False, default="SELLER")
    min_delivery_days = db.Column(db.Integer, nullable=True)
    max_delivery_days = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    seller = db.relationship("User", backref=db.backref("products", lazy=True))
    variants = db.relationship(
        "ProductVariant",
        backref="product",
        lazy="selectin",
        order_by="ProductVariant.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def has_variants(self) -> bool:
        return len(self.variants) > 0

    def sync_flat_stock(self) -> None:
        """Recompute the cached flat stock from variant rows."""
        if self.variants:
            self.count_in_stock = sum(v.stock for v in self.variants)

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} stock={self.count_in_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "name": self.name,
            "price_cents": self.price_cents,
            "count_in_stock": self.count_in_stock,
            "delivery_type": self.delivery_type,
            "min_delivery_days": self.min_delivery_days,
            "max_delivery_days": self.max_delivery_days,
            "variants": [v.to_dict() for v in self.variants],
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductVariant(db.Model):
    """Per-(size, color, age group) stock record. Absent attributes are stored as ''."""
    __tablename__ = "product_variants"
    __table_args__ = (
        db.UniqueConstraint("product_id", "size", "color", "age_group", name="uq_variants_product_attrs"),
        db.CheckConstraint("stock >= 0", name="ck_variants_stock_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    size = db.Column(db.String(32), nullable=False, default="")
    color = db.Column(db.String(32), nullable=False, default="")
    age_group = db.Column(db.String(32), nullable=False, default="")
    stock = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.size or "", self.color or "", self.age_group or "")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "size": self.size,
            "color": self.color,
            "age_group": self.age_group,
            "stock": self.stock,
        }
