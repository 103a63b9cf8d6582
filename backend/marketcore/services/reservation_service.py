# Overview: Scheduled sweep that cancels unpaid orders whose stock reservation expired.

from __future__ import annotations

import logging
from datetime import datetime

from ..extensions import db
from ..models import Order
from ..models.orders import STATUS_PENDING
from ..time_utils import utcnow
from .commission_service import cancel_commission
from .concurrency import lock_for_update, run_with_retry
from .order_service import cancel_locked_order

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Stock reservation expired"


def find_expired_order_ids(now: datetime, limit: int | None = None) -> list[int]:
    query = (
        db.session.query(Order.id)
        .filter(
            Order.status == STATUS_PENDING,
            Order.is_paid.is_(False),
            Order.stock_reservation_expires.isnot(None),
            Order.stock_reservation_expires < now,
        )
        .order_by(Order.stock_reservation_expires.asc(), Order.id.asc())
    )
    if limit:
        query = query.limit(limit)
    return [row[0] for row in query.all()]


def release_order(order_id: int, now: datetime) -> bool:
    """
    Cancel one expired order and restore its stock in its own transaction.

    The order is re-read under lock; one that was paid or cancelled since the
    scan (or whose expiry moved) is left alone and False is returned.
    """
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if (
            order is None
            or order.status != STATUS_PENDING
            or order.is_paid
            or order.stock_reservation_expires is None
            or order.stock_reservation_expires >= now
        ):
            db.session.rollback()
            return False
        cancel_locked_order(order, EXPIRED_REASON)
        db.session.commit()
        return True

    return run_with_retry(_op)


def release_expired_reservations(now: datetime | None = None, limit: int | None = None) -> dict:
    """
    Sweep expired pending orders. Per-order failures are logged and counted;
    they never stop the sweep.
    """
    now = now or utcnow()
    order_ids = find_expired_order_ids(now, limit)
    summary = {"scanned": len(order_ids), "released": 0, "skipped": 0, "failed": 0}

    for order_id in order_ids:
        try:
            released = release_order(order_id, now)
        except Exception:
            db.session.rollback()
            summary["failed"] += 1
            logger.exception("Failed to release expired reservation", extra={"order_id": order_id})
            continue

        if not released:
            summary["skipped"] += 1
            continue

        summary["released"] += 1
        logger.info("Released expired reservation", extra={"order_id": order_id})
        try:
            cancel_commission(order_id)
        except Exception:
            logger.exception("Commission cancellation failed", extra={"order_id": order_id})

    if order_ids:
        logger.info(
            "Reservation sweep: scanned=%s released=%s skipped=%s failed=%s",
            summary["scanned"], summary["released"], summary["skipped"], summary["failed"],
        )
    return summary
