from __future__ import annotations

from ..extensions import db
from marketcore.time_utils import to_utc_z

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"


class Order(db.Model):
    """
    Customer order with its stock reservation.

    LIFECYCLE:
    - pending: stock already decremented, reservation expires at stock_reservation_expires
    - paid: payment confirmed, reservation cleared, stock stays consumed
    - delivered: fulfilment done, seller earnings and commission settle
    - cancelled: stock restored (manual cancel or reaper)

    is_paid / is_delivered are kept in step with status for API consumers.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_expires", "status", "stock_reservation_expires"),
        db.Index("ix_orders_user", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Buyer: registered user or guest
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    is_guest = db.Column(db.Boolean, nullable=False, default=False)
    guest_email = db.Column(db.String(255), nullable=True)
    guest_name = db.Column(db.String(255), nullable=True)
    guest_phone = db.Column(db.String(64), nullable=True)

    shipping_details = db.Column(db.JSON, nullable=True)
    payment_method = db.Column(db.String(64), nullable=True)

    # Totals (all amounts in cents)
    items_price_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_price_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_price_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING)
    status_reason = db.Column(db.String(255), nullable=True)

    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_result = db.Column(db.JSON, nullable=True)  # {id, status, update_time, email}

    is_delivered = db.Column(db.Boolean, nullable=False, default=False)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Null unless the order is pending
    stock_reservation_expires = db.Column(db.DateTime(timezone=True), nullable=True)

    # Payment provider correlation id
    external_order_id = db.Column(db.String(128), nullable=True, unique=True)
    sales_ref_code = db.Column(db.String(32), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", foreign_keys=[user_id])
    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy="selectin",
        order_by="OrderLine.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def buyer_email(self) -> str | None:
        if self.user is not None:
            return self.user.email
        return self.guest_email

    @property
    def seller_ids(self) -> list[int]:
        return sorted({line.seller_id for line in self.lines})

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "is_guest": self.is_guest,
            "guest_email": self.guest_email,
            "guest_name": self.guest_name,
            "guest_phone": self.guest_phone,
            "shipping_details": self.shipping_details,
            "payment_method": self.payment_method,
            "items_price_cents": self.items_price_cents,
            "shipping_price_cents": self.shipping_price_cents,
            "tax_price_cents": self.tax_price_cents,
            "total_price_cents": self.total_price_cents,
            "status": self.status,
            "status_reason": self.status_reason,
            "is_paid": self.is_paid,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "payment_result": self.payment_result,
            "is_delivered": self.is_delivered,
            "delivered_at": to_utc_z(self.delivered_at) if self.delivered_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "stock_reservation_expires": (
                to_utc_z(self.stock_reservation_expires) if self.stock_reservation_expires else None
            ),
            "external_order_id": self.external_order_id,
            "sales_ref_code": self.sales_ref_code,
            "lines": [line.to_dict() for line in self.lines],
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class OrderLine(db.Model):
    """Frozen snapshot of the product at checkout. Pricing and fees never re-read the product."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.Index("ix_order_lines_seller", "seller_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    name = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    qty = db.Column(db.Integer, nullable=False)

    size = db.Column(db.String(32), nullable=False, default="")
    color = db.Column(db.String(32), nullable=False, default="")
    age_group = db.Column(db.String(32), nullable=False, default="")

    delivery_type = db.Column(db.String(16), nullable=False, default="SELLER")
    min_delivery_days = db.Column(db.Integer, nullable=True)
    max_delivery_days = db.Column(db.Integer, nullable=True)

    @property
    def line_total_cents(self) -> int:
        return self.price_cents * self.qty

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "seller_id": self.seller_id,
            "name": self.name,
            "price_cents": self.price_cents,
            "qty": self.qty,
            "size": self.size,
            "color": self.color,
            "age_group": self.age_group,
            "delivery_type": self.delivery_type,
            "min_delivery_days": self.min_delivery_days,
            "max_delivery_days": self.max_delivery_days,
            "line_total_cents": self.line_total_cents,
        }
