# Overview: Referral commission ledger for sales managers.

"""
Commission lifecycle:

- PENDING: created when the referred order is paid (one per order)
- APPROVED: order delivered, amount credited to the COMMISSION balance account
- PAID: consumed by a completed withdrawal (oldest first)
- CANCELLED: order cancelled; an APPROVED credit is reversed first
"""

from __future__ import annotations

import logging
import secrets
import string

from flask import current_app

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import BalanceTransaction, Commission, Order, User
from ..models.accounts import ROLE_ADMIN, ROLE_SALES_MANAGER
from ..models.ledger import (
    COMMISSION_APPROVED,
    COMMISSION_CANCELLED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    KIND_COMMISSION_CREDIT,
    KIND_COMMISSION_REVERSAL,
    LEDGER_COMMISSION,
)
from ..time_utils import utcnow
from . import ledger_service
from .balance_service import apply_bps, get_balance, request_payout
from .concurrency import lock_for_update, run_with_retry

logger = logging.getLogger(__name__)

REF_CODE_PREFIX = "SM_"
REF_CODE_ALPHABET = string.ascii_uppercase + string.digits
REF_CODE_LENGTH = 8
REF_CODE_MAX_ATTEMPTS = 10

COMMISSION_ROLES = (ROLE_SALES_MANAGER, ROLE_ADMIN)


def _lock_commission(order_id: int) -> Commission | None:
    return lock_for_update(db.session.query(Commission).filter_by(order_id=order_id)).first()


def process_order_commission(order_id: int, ref_code: str | None) -> Commission | None:
    """
    Record a PENDING commission for a referred order.

    Unknown codes and non sales-manager owners are ignored (None). A second
    call for the same order returns the existing row.
    """
    if not ref_code or not ref_code.startswith(REF_CODE_PREFIX):
        return None

    def _op():
        owner = db.session.query(User).filter_by(sales_ref_code=ref_code).first()
        if not owner:
            logger.warning("Sales manager not found for ref code %s", ref_code, extra={"order_id": order_id})
            return None
        if owner.role not in COMMISSION_ROLES:
            logger.warning("User %s has a ref code but is not a sales manager", owner.id, extra={"order_id": order_id})
            return None

        order = db.session.get(Order, order_id)
        if not order:
            logger.error("Order not found for commission", extra={"order_id": order_id})
            return None

        existing = db.session.query(Commission).filter_by(order_id=order_id).first()
        if existing:
            logger.info("Commission already exists", extra={"order_id": order_id})
            return existing

        rate_bps = owner.commission_rate_bps
        if rate_bps is None:
            rate_bps = current_app.config["DEFAULT_COMMISSION_BPS"]

        commission = Commission(
            order_id=order.id,
            owner_id=owner.id,
            customer_id=order.user_id,
            guest_email=order.guest_email,
            sales_ref_code=ref_code,
            order_total_cents=order.total_price_cents,
            rate_bps=rate_bps,
            amount_cents=apply_bps(order.total_price_cents, rate_bps),
            status=COMMISSION_PENDING,
        )
        db.session.add(commission)
        db.session.commit()
        return commission

    commission = run_with_retry(_op)
    if commission is not None:
        logger.info(
            "Commission of %s cents recorded for owner %s", commission.amount_cents, commission.owner_id,
            extra={"order_id": order_id},
        )
    return commission


def approve_commission(order_id: int) -> Commission | None:
    """PENDING -> APPROVED exactly once, crediting the owner's commission balance."""
    def _op():
        commission = _lock_commission(order_id)
        if not commission or commission.status != COMMISSION_PENDING:
            return commission, False

        commission.status = COMMISSION_APPROVED
        commission.approved_at = utcnow()
        account = ledger_service.lock_account(commission.owner_id, LEDGER_COMMISSION)
        ledger_service.credit(
            account,
            commission.amount_cents,
            KIND_COMMISSION_CREDIT,
            order_id=order_id,
            rate_bps=commission.rate_bps,
            gross_cents=commission.order_total_cents,
            description=f"Commission for order #{order_id}",
        )
        db.session.commit()
        return commission, True

    commission, changed = run_with_retry(_op)
    if changed:
        logger.info("Commission approved", extra={"order_id": order_id, "owner_id": commission.owner_id})
    return commission


def cancel_commission(order_id: int) -> Commission | None:
    """APPROVED: reverse the credit then cancel. PENDING: cancel. Anything else: no-op."""
    def _op():
        commission = _lock_commission(order_id)
        if not commission or commission.status not in (COMMISSION_PENDING, COMMISSION_APPROVED):
            return commission, False

        if commission.status == COMMISSION_APPROVED:
            account = ledger_service.lock_account(commission.owner_id, LEDGER_COMMISSION)
            ledger_service.credit(
                account,
                -commission.amount_cents,
                KIND_COMMISSION_REVERSAL,
                order_id=order_id,
                rate_bps=commission.rate_bps,
                description=f"Commission reversed for cancelled order #{order_id}",
            )
        commission.status = COMMISSION_CANCELLED
        commission.cancelled_at = utcnow()
        db.session.commit()
        return commission, True

    commission, changed = run_with_retry(_op)
    if changed:
        logger.info("Commission cancelled", extra={"order_id": order_id, "owner_id": commission.owner_id})
    return commission


def mark_commissions_paid(owner_id: int, amount_cents: int, transaction: BalanceTransaction) -> list[Commission]:
    """
    Walk APPROVED commissions oldest first and flip each to PAID while it fits
    in what remains of the withdrawn amount. Runs inside the caller's transaction.
    """
    remaining = amount_cents
    paid = []
    commissions = (
        lock_for_update(
            db.session.query(Commission)
            .filter_by(owner_id=owner_id, status=COMMISSION_APPROVED)
            .order_by(Commission.created_at.asc(), Commission.id.asc())
        )
        .all()
    )
    now = utcnow()
    for commission in commissions:
        if remaining <= 0:
            break
        if commission.amount_cents <= remaining:
            commission.status = COMMISSION_PAID
            commission.paid_at = now
            commission.paid_by_transaction_id = transaction.id
            remaining -= commission.amount_cents
            paid.append(commission)
    return paid


def request_withdrawal(owner_id: int, amount_cents) -> BalanceTransaction:
    owner = db.session.get(User, owner_id)
    if not owner:
        raise NotFoundError("User not found", details={"owner_id": owner_id})
    if owner.role not in COMMISSION_ROLES:
        raise ValidationError("Only sales managers can withdraw commissions", details={"owner_id": owner_id})
    return request_payout(
        owner_id,
        LEDGER_COMMISSION,
        amount_cents,
        nomination=f"Sales commission payout #{owner_id}",
    )


def generate_ref_code(user_id: int) -> str:
    """Issue (or return the existing) SM_XXXXXXXX referral code."""
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found", details={"user_id": user_id})
    if user.role not in COMMISSION_ROLES:
        raise ValidationError("Only sales managers can have a referral code", details={"user_id": user_id})
    if user.sales_ref_code:
        return user.sales_ref_code

    for _ in range(REF_CODE_MAX_ATTEMPTS):
        code = REF_CODE_PREFIX + "".join(secrets.choice(REF_CODE_ALPHABET) for _ in range(REF_CODE_LENGTH))
        if not db.session.query(User.id).filter_by(sales_ref_code=code).first():
            break
    else:
        raise ValidationError("Could not generate a unique referral code")

    user.sales_ref_code = code
    db.session.commit()
    logger.info("Generated referral code %s", code, extra={"owner_id": user_id})
    return code


def validate_ref_code(code: str | None) -> dict:
    if not code or not code.startswith(REF_CODE_PREFIX):
        return {"valid": False}
    user = (
        db.session.query(User)
        .filter(User.sales_ref_code == code, User.role.in_(COMMISSION_ROLES))
        .first()
    )
    if not user:
        return {"valid": False}
    return {"valid": True, "manager_name": user.name or "Manager"}


def update_commission_rate(owner_id: int, rate_bps) -> User:
    if not isinstance(rate_bps, int) or isinstance(rate_bps, bool) or not 0 <= rate_bps <= 10000:
        raise ValidationError("rate_bps must be an integer between 0 and 10000")
    user = db.session.get(User, owner_id)
    if not user:
        raise NotFoundError("User not found", details={"owner_id": owner_id})
    if user.role not in COMMISSION_ROLES:
        raise ValidationError("User is not a sales manager", details={"owner_id": owner_id})
    user.commission_rate_bps = rate_bps
    db.session.commit()
    logger.info("Commission rate set to %s bps", rate_bps, extra={"owner_id": owner_id})
    return user


def get_stats(owner_id: int) -> dict:
    """Per-status totals (cancelled excluded from totals) plus the commission balance."""
    if not db.session.get(User, owner_id):
        raise NotFoundError("User not found", details={"owner_id": owner_id})

    rows = (
        db.session.query(Commission.status, db.func.count(Commission.id), db.func.sum(Commission.amount_cents))
        .filter(Commission.owner_id == owner_id)
        .group_by(Commission.status)
        .all()
    )
    stats = {
        "total_commissions_cents": 0,
        "pending_cents": 0,
        "approved_cents": 0,
        "paid_cents": 0,
        "total_orders": 0,
    }
    for status, count, total in rows:
        if status == COMMISSION_CANCELLED:
            continue
        total = int(total or 0)
        stats["total_orders"] += count
        stats["total_commissions_cents"] += total
        if status == COMMISSION_PENDING:
            stats["pending_cents"] = total
        elif status == COMMISSION_APPROVED:
            stats["approved_cents"] = total
        elif status == COMMISSION_PAID:
            stats["paid_cents"] = total

    stats["balance"] = get_balance(owner_id, LEDGER_COMMISSION).to_dict()
    return stats
