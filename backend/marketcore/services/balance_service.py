# Overview: Seller balance ledger: earnings settlement on delivery and bank withdrawals.

from __future__ import annotations

import logging

from flask import current_app

from ..errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from ..extensions import db
from ..models import BalanceAccount, BalanceTransaction, Order, User
from ..models.catalog import DELIVERY_PLATFORM
from ..models.ledger import KIND_EARNING, LEDGER_SELLER
from ..models.orders import STATUS_DELIVERED
from . import ledger_service
from .bank_gateway import TransferRequest, get_gateway, validate_account_number
from .concurrency import run_with_retry
from .notification_service import notify

logger = logging.getLogger(__name__)


def apply_bps(amount_cents: int, bps: int) -> int:
    """amount * bps / 10000, rounded half up."""
    return (amount_cents * bps + 5000) // 10000


def calculate_line_settlement(line, config=None) -> dict:
    """
    Fee breakdown for one order line.

    platform fee applies to every line; the delivery fee only when the
    platform delivers, clamped to [DELIVERY_FEE_MIN_CENTS, DELIVERY_FEE_MAX_CENTS].
    """
    config = config or current_app.config
    gross = line.price_cents * line.qty
    platform_fee = apply_bps(gross, config["PLATFORM_FEE_BPS"])

    delivery_fee = 0
    if line.delivery_type == DELIVERY_PLATFORM:
        delivery_fee = apply_bps(gross, config["DELIVERY_FEE_BPS"])
        delivery_fee = max(delivery_fee, config["DELIVERY_FEE_MIN_CENTS"])
        delivery_fee = min(delivery_fee, config["DELIVERY_FEE_MAX_CENTS"])

    return {
        "gross_cents": gross,
        "platform_fee_cents": platform_fee,
        "delivery_fee_cents": delivery_fee,
        "net_cents": gross - platform_fee - delivery_fee,
    }


def accrue_earnings(order_id: int) -> list[BalanceTransaction]:
    """
    Credit each seller's net earnings for a delivered order.

    One EARNING row per order line; lines that already have one are skipped,
    so repeated calls settle nothing twice.
    """
    def _op():
        order = db.session.get(Order, order_id)
        if not order:
            raise NotFoundError("Order not found", details={"order_id": order_id})
        if order.status != STATUS_DELIVERED:
            raise ConflictError(
                "Earnings settle only for delivered orders",
                details={"order_id": order.id, "status": order.status},
            )

        line_ids = [line.id for line in order.lines]
        settled = {
            row[0]
            for row in db.session.query(BalanceTransaction.order_line_id)
            .filter(BalanceTransaction.order_line_id.in_(line_ids), BalanceTransaction.kind == KIND_EARNING)
            .all()
        }

        created = []
        for line in sorted(order.lines, key=lambda ln: (ln.seller_id, ln.id)):
            if line.id in settled:
                continue
            breakdown = calculate_line_settlement(line)
            account = ledger_service.lock_account(line.seller_id, LEDGER_SELLER)
            tx = ledger_service.credit(
                account,
                breakdown["net_cents"],
                KIND_EARNING,
                order_id=order.id,
                order_line_id=line.id,
                description=f"Order #{order.id}: {line.name} x{line.qty}",
                gross_cents=breakdown["gross_cents"],
                platform_fee_cents=breakdown["platform_fee_cents"],
                delivery_fee_cents=breakdown["delivery_fee_cents"],
            )
            created.append(tx)

        db.session.commit()
        return created

    created = run_with_retry(_op)
    if created:
        logger.info("Settled %s order line(s)", len(created), extra={"order_id": order_id})
    else:
        logger.info("Order already settled", extra={"order_id": order_id})
    return created


def _payout_details(owner_id: int) -> User:
    user = db.session.get(User, owner_id)
    if not user:
        raise NotFoundError("User not found", details={"owner_id": owner_id})
    if not user.account_number or not user.identification_number:
        raise ValidationError(
            "Bank account number and identification number are required for withdrawals",
            details={"owner_id": owner_id},
        )
    if not validate_account_number(user.account_number):
        raise ValidationError("Invalid bank account number", details={"owner_id": owner_id})
    return user


def request_payout(owner_id: int, ledger: str, amount_cents, *, nomination: str) -> BalanceTransaction:
    """
    Withdraw from an owner's ledger to their bank account.

    1. available -> pending with a WITHDRAWAL_PENDING row, committed before the bank call
    2. bank result 1: pending -> withdrawn immediately
    3. bank result 0: document key stored, reconciliation settles it later
    4. bank failure: compensating reversal, then ExternalServiceError
    """
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool):
        raise ValidationError("amount_cents must be an integer")
    minimum = current_app.config["MIN_WITHDRAWAL_CENTS"]
    if amount_cents < minimum:
        raise ValidationError(
            "Withdrawal amount is below the minimum",
            details={"minimum_cents": minimum, "requested_cents": amount_cents},
        )

    user = _payout_details(owner_id)
    transfer = TransferRequest(
        account_number=user.account_number,
        identification_number=user.identification_number,
        beneficiary_name=user.display_name,
        amount_cents=amount_cents,
        nomination=nomination,
        bank_code=user.beneficiary_bank_code,
    )

    def _begin():
        account = ledger_service.lock_account(owner_id, ledger)
        tx = ledger_service.begin_withdrawal(account, amount_cents, description=nomination)
        db.session.commit()
        return tx.id

    tx_id = run_with_retry(_begin)
    logger.info("Withdrawal reserved", extra={"transaction_id": tx_id, "owner_id": owner_id, "ledger": ledger})

    try:
        result = get_gateway().transfer_to_seller(transfer)
    except Exception as exc:
        reason = str(exc) or exc.__class__.__name__

        def _compensate():
            tx = ledger_service.get_transaction(tx_id, lock=True)
            ledger_service.fail_withdrawal(tx, reason)
            db.session.commit()
            return tx

        tx = run_with_retry(_compensate)
        notify("send_withdrawal_failed", tx, reason)
        if isinstance(exc, ExternalServiceError):
            raise
        raise ExternalServiceError(reason, details={"transaction_id": tx_id}) from exc

    def _record():
        tx = ledger_service.get_transaction(tx_id, lock=True)
        tx.bank_document_key = result.document_key
        tx.bank_document_id = result.document_id
        if result.is_completed:
            ledger_service.complete_withdrawal(tx)
        db.session.commit()
        return tx

    tx = run_with_retry(_record)
    if result.is_completed:
        notify("send_withdrawal_completed", tx)
    else:
        notify("send_withdrawal_requested", tx)
        notify(
            "send_admin_status",
            "Withdrawal awaiting signature",
            f"Transfer document {result.document_key} for owner {owner_id} needs an OTP signature.",
        )
    return tx


def request_withdrawal(seller_id: int, amount_cents) -> BalanceTransaction:
    return request_payout(
        seller_id,
        LEDGER_SELLER,
        amount_cents,
        nomination=f"Seller payout #{seller_id}",
    )


def get_balance(owner_id: int, ledger: str = LEDGER_SELLER) -> BalanceAccount:
    """Read-only view; an owner with no activity gets a zero account."""
    account = db.session.query(BalanceAccount).filter_by(owner_id=owner_id, ledger=ledger).first()
    if account:
        return account
    if not db.session.get(User, owner_id):
        raise NotFoundError("User not found", details={"owner_id": owner_id})
    return BalanceAccount(
        owner_id=owner_id,
        ledger=ledger,
        available_cents=0,
        pending_cents=0,
        total_earnings_cents=0,
        total_withdrawn_cents=0,
    )


def list_transactions(
    owner_id: int,
    ledger: str = LEDGER_SELLER,
    *,
    page: int = 1,
    limit: int = 20,
    order_id: int | None = None,
) -> dict:
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), 100)
    query = db.session.query(BalanceTransaction).filter_by(owner_id=owner_id, ledger=ledger)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    query = query.order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
    total = query.count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return {
        "items": [row.to_dict() for row in rows],
        "page": page,
        "limit": limit,
        "total": total,
    }
