# Overview: Order state machine: reservation at creation, payment, delivery, cancellation.

"""
Order lifecycle service.

RULES:
- create_order decrements stock for every line inside ONE transaction; any
  failing line aborts the whole order and no decrement is observable.
- confirm_payment never touches stock again (it was consumed at creation).
- cancel_order is the only path that returns stock to a non-expired order.
- Downstream effects (commission, settlement, notifications) run after the
  state change commits and never undo it.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Order, OrderLine, Product, User
from ..models.orders import STATUS_CANCELLED, STATUS_DELIVERED, STATUS_PAID, STATUS_PENDING
from ..time_utils import utcnow
from .balance_service import accrue_earnings
from .commission_service import approve_commission, cancel_commission, process_order_commission
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import load_product_for_update, reserve_line, restore_line, validate_line_stock
from .notification_service import notify

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Manually cancelled"
PAYMENT_RESULT_FIELDS = ("id", "status", "update_time", "email")


def _validate_items(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("Order must contain at least one item")

    cleaned = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError("Invalid order item", details={"index": idx})
        product_id = item.get("product_id")
        qty = item.get("qty")
        if not isinstance(product_id, int) or isinstance(product_id, bool) or product_id < 1:
            raise ValidationError("product_id must be a positive integer", details={"index": idx})
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
            raise ValidationError("qty must be a positive integer", details={"index": idx, "qty": qty})
        cleaned.append({
            "product_id": product_id,
            "qty": qty,
            "size": item.get("size"),
            "color": item.get("color"),
            "age_group": item.get("age_group"),
        })
    return cleaned


def _lock_order(order_id: int | None = None, external_order_id: str | None = None) -> Order:
    query = db.session.query(Order)
    if order_id is not None:
        query = query.filter_by(id=order_id)
    elif external_order_id:
        query = query.filter_by(external_order_id=external_order_id)
    else:
        raise ValidationError("order_id or external_order_id is required")

    order = lock_for_update(query).first()
    if not order:
        raise NotFoundError(
            "Order not found",
            details={"order_id": order_id, "external_order_id": external_order_id},
        )
    return order


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def get_order_by_external_id(external_order_id: str) -> Order:
    order = db.session.query(Order).filter_by(external_order_id=external_order_id).first()
    if not order:
        raise NotFoundError("Order not found", details={"external_order_id": external_order_id})
    return order


def create_order(
    items,
    *,
    user_id: int | None = None,
    guest: dict | None = None,
    shipping: dict | None = None,
    payment_method: str | None = None,
    sales_ref_code: str | None = None,
    external_order_id: str | None = None,
    shipping_price_cents: int = 0,
    tax_price_cents: int = 0,
) -> Order:
    """
    Reserve stock for every line and persist a pending order.

    The reservation expires RESERVATION_MINUTES after creation.
    """
    lines = _validate_items(items)

    guest = guest or {}
    if user_id is None and not (guest.get("email") or "").strip():
        raise ValidationError("Either user_id or guest email is required")
    for name, value in (("shipping_price_cents", shipping_price_cents), ("tax_price_cents", tax_price_cents)):
        if not isinstance(value, int) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer")

    reservation_minutes = current_app.config["RESERVATION_MINUTES"]

    def _op():
        if user_id is not None and not db.session.get(User, user_id):
            raise NotFoundError("User not found", details={"user_id": user_id})
        if external_order_id and db.session.query(Order.id).filter_by(external_order_id=external_order_id).first():
            raise ConflictError("Order already exists", details={"external_order_id": external_order_id})

        # Lock in id order so concurrent multi-product checkouts cannot deadlock
        products = {pid: load_product_for_update(pid) for pid in sorted({item["product_id"] for item in lines})}

        order = Order(
            user_id=user_id,
            is_guest=user_id is None,
            guest_email=(guest.get("email") or "").strip() or None,
            guest_name=guest.get("name"),
            guest_phone=guest.get("phone"),
            shipping_details=shipping,
            payment_method=payment_method,
            status=STATUS_PENDING,
            external_order_id=external_order_id,
            sales_ref_code=(sales_ref_code or "").strip() or None,
            shipping_price_cents=shipping_price_cents,
            tax_price_cents=tax_price_cents,
        )

        items_price = 0
        for item in lines:
            product = products[item["product_id"]]
            variant = reserve_line(product, item["qty"], item["size"], item["color"], item["age_group"])
            order.lines.append(OrderLine(
                product_id=product.id,
                seller_id=product.seller_id,
                name=product.name,
                price_cents=product.price_cents,
                qty=item["qty"],
                size=variant.size if variant else "",
                color=variant.color if variant else "",
                age_group=variant.age_group if variant else "",
                delivery_type=product.delivery_type,
                min_delivery_days=product.min_delivery_days,
                max_delivery_days=product.max_delivery_days,
            ))
            items_price += product.price_cents * item["qty"]

        order.items_price_cents = items_price
        order.total_price_cents = items_price + shipping_price_cents + tax_price_cents
        order.stock_reservation_expires = utcnow() + timedelta(minutes=reservation_minutes)

        db.session.add(order)
        db.session.commit()
        return order

    order = run_with_retry(_op, attempts=current_app.config["RESERVATION_RETRY_ATTEMPTS"])
    logger.info("Order created with %s line(s)", len(order.lines), extra={"order_id": order.id})
    return order


def confirm_payment(
    order_id: int | None = None,
    *,
    external_order_id: str | None = None,
    payment_result: dict | None = None,
) -> Order:
    """
    Mark an order paid. Idempotency guard: already paid or cancelled orders are rejected.

    An expired reservation does not block payment; the stock was never restored
    unless the reaper cancelled the order, which the cancelled check catches.
    """
    def _op():
        order = _lock_order(order_id, external_order_id)
        if order.is_paid or order.status in (STATUS_PAID, STATUS_DELIVERED):
            raise ConflictError("Order is already paid", details={"order_id": order.id})
        if order.status == STATUS_CANCELLED:
            raise ConflictError("Order is cancelled", details={"order_id": order.id})

        now = utcnow()
        if order.stock_reservation_expires and order.stock_reservation_expires < now:
            logger.warning("Payment confirmed after reservation expiry", extra={"order_id": order.id})
        else:
            for line in order.lines:
                product = db.session.get(Product, line.product_id)
                if product is not None:
                    validate_line_stock(product, line.size, line.color, line.age_group)

        result = payment_result or {}
        order.is_paid = True
        order.paid_at = now
        order.payment_result = {key: result.get(key) for key in PAYMENT_RESULT_FIELDS}
        order.status = STATUS_PAID
        order.stock_reservation_expires = None
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Payment confirmed", extra={"order_id": order.id})

    if order.sales_ref_code:
        try:
            process_order_commission(order.id, order.sales_ref_code)
        except Exception:
            logger.exception("Commission processing failed", extra={"order_id": order.id})

    notify("send_order_confirmation", order)
    for seller_id in order.seller_ids:
        notify("send_seller_order", order, seller_id)
    return order


def mark_delivered(order_id: int) -> Order:
    """Paid -> delivered, then settle seller earnings and approve commission."""
    def _op():
        order = _lock_order(order_id)
        if order.status == STATUS_DELIVERED:
            logger.info("Order already delivered", extra={"order_id": order.id})
            return order, False
        if order.status != STATUS_PAID:
            raise ConflictError(
                f"Cannot deliver order with status {order.status}",
                details={"order_id": order.id, "status": order.status},
            )
        order.status = STATUS_DELIVERED
        order.is_delivered = True
        order.delivered_at = utcnow()
        db.session.commit()
        return order, True

    order, changed = run_with_retry(_op)
    if not changed:
        return order

    logger.info("Order delivered", extra={"order_id": order.id})
    try:
        accrue_earnings(order.id)
    except Exception:
        logger.exception("Seller earnings settlement failed", extra={"order_id": order.id})
    try:
        approve_commission(order.id)
    except Exception:
        logger.exception("Commission approval failed", extra={"order_id": order.id})

    notify("send_order_delivered", order)
    return order


def restore_order_stock(order: Order) -> None:
    """Return every line's quantity to stock. Caller holds the order lock and commits."""
    for line in order.lines:
        product = lock_for_update(db.session.query(Product).filter_by(id=line.product_id)).first()
        if product is None:
            logger.warning("Product %s no longer exists; stock not restored", line.product_id, extra={"order_id": order.id})
            continue
        restore_line(product, line.qty, line.size, line.color, line.age_group)


def cancel_locked_order(order: Order, reason: str) -> None:
    restore_order_stock(order)
    order.status = STATUS_CANCELLED
    order.status_reason = reason
    order.cancelled_at = utcnow()
    order.stock_reservation_expires = None


def cancel_order(order_id: int, reason: str | None = None) -> Order:
    """Cancel an unpaid order and restore its stock."""
    def _op():
        order = _lock_order(order_id)
        if order.status == STATUS_CANCELLED:
            raise ConflictError("Order is already cancelled", details={"order_id": order.id})
        if order.is_paid or order.status in (STATUS_PAID, STATUS_DELIVERED):
            raise ConflictError("Paid orders cannot be cancelled", details={"order_id": order.id, "status": order.status})

        cancel_locked_order(order, (reason or "").strip() or DEFAULT_CANCEL_REASON)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    logger.info("Order cancelled: %s", order.status_reason, extra={"order_id": order.id})

    try:
        cancel_commission(order.id)
    except Exception:
        logger.exception("Commission cancellation failed", extra={"order_id": order.id})
    return order
