# Overview: Outbound notification seam. Delivery is best-effort and never fails the caller.

from __future__ import annotations

import logging
from typing import Protocol

from flask import current_app

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send_order_confirmation(self, order) -> None: ...

    def send_seller_order(self, order, seller_id: int) -> None: ...

    def send_order_delivered(self, order) -> None: ...

    def send_admin_status(self, subject: str, message: str) -> None: ...

    def send_withdrawal_requested(self, transaction) -> None: ...

    def send_withdrawal_completed(self, transaction) -> None: ...

    def send_withdrawal_failed(self, transaction, reason: str) -> None: ...


class LoggingNotifier:
    """Default notifier: records what would have been sent."""

    def send_order_confirmation(self, order) -> None:
        logger.info("Order confirmation for %s", order.buyer_email, extra={"order_id": order.id})

    def send_seller_order(self, order, seller_id: int) -> None:
        logger.info("New order notice for seller %s", seller_id, extra={"order_id": order.id, "owner_id": seller_id})

    def send_order_delivered(self, order) -> None:
        logger.info("Delivery notice for %s", order.buyer_email, extra={"order_id": order.id})

    def send_admin_status(self, subject: str, message: str) -> None:
        logger.info("Admin notice to %s: %s - %s", current_app.config.get("ADMIN_EMAIL"), subject, message)

    def send_withdrawal_requested(self, transaction) -> None:
        logger.info(
            "Withdrawal of %s cents requested", -transaction.amount_cents,
            extra={"transaction_id": transaction.id, "owner_id": transaction.owner_id},
        )

    def send_withdrawal_completed(self, transaction) -> None:
        logger.info(
            "Withdrawal of %s cents completed", -transaction.amount_cents,
            extra={"transaction_id": transaction.id, "owner_id": transaction.owner_id},
        )

    def send_withdrawal_failed(self, transaction, reason: str) -> None:
        logger.info(
            "Withdrawal failed: %s", reason,
            extra={"transaction_id": transaction.id, "owner_id": transaction.owner_id},
        )


def get_notifier():
    return current_app.extensions["notifier"]


def notify(method: str, *args, **kwargs) -> bool:
    """
    Fire-and-forget dispatch to the registered notifier.

    Returns False when delivery raised; the error is logged and dropped.
    """
    try:
        getattr(get_notifier(), method)(*args, **kwargs)
        return True
    except Exception:
        logger.exception("Notification %s failed", method)
        return False
