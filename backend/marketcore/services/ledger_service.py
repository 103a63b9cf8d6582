# Overview: Shared balance-ledger primitives: accounts, append-only rows, withdrawal state moves.

from __future__ import annotations

import logging

from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import BalanceAccount, BalanceTransaction
from ..models.ledger import (
    EARNING_KINDS,
    KIND_WITHDRAWAL_COMPLETED,
    KIND_WITHDRAWAL_FAILED,
    KIND_WITHDRAWAL_PENDING,
    LEDGER_COMMISSION,
    LEDGER_SELLER,
)
from .concurrency import lock_for_update

logger = logging.getLogger(__name__)
"""
Balance ledger invariants (authoritative)

- BalanceTransaction rows are append-only; only kind, bank document fields,
  failure_reason and description change after insert.
- Cached BalanceAccount fields are reconstructable from rows:
    available      = sum(amount) over every kind except WITHDRAWAL_FAILED
    pending        = -sum(amount) over WITHDRAWAL_PENDING
    total_withdrawn = -sum(amount) over WITHDRAWAL_COMPLETED
    total_earnings = sum(amount) over EARNING, COMMISSION_CREDIT, COMMISSION_REVERSAL
- Functions here never commit; the caller owns the transaction.
"""

VALID_LEDGERS = (LEDGER_SELLER, LEDGER_COMMISSION)

WITHDRAWAL_STATUS = {
    KIND_WITHDRAWAL_PENDING: "pending",
    KIND_WITHDRAWAL_COMPLETED: "completed",
    KIND_WITHDRAWAL_FAILED: "failed",
}


def withdrawal_outcome(tx: BalanceTransaction) -> dict:
    """Caller-facing withdrawal result: {status, external_document_key}."""
    return {
        "status": WITHDRAWAL_STATUS.get(tx.kind, tx.kind.lower()),
        "external_document_key": tx.bank_document_key,
    }


def _account_query(owner_id: int, ledger: str):
    return db.session.query(BalanceAccount).filter_by(owner_id=owner_id, ledger=ledger)


def get_or_create_account(owner_id: int, ledger: str) -> BalanceAccount:
    """Safe to call repeatedly (idempotent)."""
    if ledger not in VALID_LEDGERS:
        raise ValidationError(f"Unknown ledger {ledger}")
    account = _account_query(owner_id, ledger).first()
    if account:
        return account

    account = BalanceAccount(
        owner_id=owner_id,
        ledger=ledger,
        available_cents=0,
        pending_cents=0,
        total_earnings_cents=0,
        total_withdrawn_cents=0,
    )
    db.session.add(account)
    db.session.flush()
    return account


def lock_account(owner_id: int, ledger: str) -> BalanceAccount:
    account = lock_for_update(_account_query(owner_id, ledger)).first()
    if account:
        return account
    return get_or_create_account(owner_id, ledger)


def get_transaction(transaction_id: int, *, lock: bool = False) -> BalanceTransaction:
    query = db.session.query(BalanceTransaction).filter_by(id=transaction_id)
    if lock:
        query = lock_for_update(query)
    tx = query.first()
    if not tx:
        raise NotFoundError("Transaction not found", details={"transaction_id": transaction_id})
    return tx


def append_transaction(account: BalanceAccount, *, amount_cents: int, kind: str, **fields) -> BalanceTransaction:
    """Insert a ledger row. Does not touch the cached balance."""
    tx = BalanceTransaction(
        account_id=account.id,
        owner_id=account.owner_id,
        ledger=account.ledger,
        amount_cents=amount_cents,
        kind=kind,
        **fields,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def credit(account: BalanceAccount, amount_cents: int, kind: str, **fields) -> BalanceTransaction:
    """Post an earning-type row (signed) into available and total earnings."""
    if kind not in EARNING_KINDS:
        raise ValidationError(f"{kind} is not an earning kind")
    account.available_cents += amount_cents
    account.total_earnings_cents += amount_cents
    return append_transaction(account, amount_cents=amount_cents, kind=kind, **fields)


def begin_withdrawal(account: BalanceAccount, amount_cents: int, description: str | None = None) -> BalanceTransaction:
    """Move amount from available to pending and record a WITHDRAWAL_PENDING row."""
    if amount_cents <= 0:
        raise ValidationError("Withdrawal amount must be positive")
    if amount_cents > account.available_cents:
        raise ConflictError(
            "Insufficient balance",
            details={"available_cents": account.available_cents, "requested_cents": amount_cents},
        )
    account.available_cents -= amount_cents
    account.pending_cents += amount_cents
    return append_transaction(
        account,
        amount_cents=-amount_cents,
        kind=KIND_WITHDRAWAL_PENDING,
        description=description,
    )


def complete_withdrawal(tx: BalanceTransaction) -> bool:
    """
    pending -> withdrawn for a WITHDRAWAL_PENDING row.

    Returns False (and changes nothing) when the row already left the pending state.
    """
    if tx.kind != KIND_WITHDRAWAL_PENDING:
        logger.info("Withdrawal already settled as %s", tx.kind, extra={"transaction_id": tx.id})
        return False

    amount = -tx.amount_cents
    account = lock_account(tx.owner_id, tx.ledger)
    account.pending_cents -= amount
    account.total_withdrawn_cents += amount
    tx.kind = KIND_WITHDRAWAL_COMPLETED

    if tx.ledger == LEDGER_COMMISSION:
        from .commission_service import mark_commissions_paid
        mark_commissions_paid(tx.owner_id, amount, tx)

    logger.info("Withdrawal completed", extra={"transaction_id": tx.id, "owner_id": tx.owner_id, "ledger": tx.ledger})
    return True


def fail_withdrawal(tx: BalanceTransaction, reason: str) -> bool:
    """Compensating reversal: pending -> available. Returns False when not pending."""
    if tx.kind != KIND_WITHDRAWAL_PENDING:
        logger.info("Withdrawal already settled as %s", tx.kind, extra={"transaction_id": tx.id})
        return False

    amount = -tx.amount_cents
    account = lock_account(tx.owner_id, tx.ledger)
    account.pending_cents -= amount
    account.available_cents += amount
    tx.kind = KIND_WITHDRAWAL_FAILED
    tx.failure_reason = (reason or "")[:512]

    logger.warning(
        "Withdrawal failed: %s", reason,
        extra={"transaction_id": tx.id, "owner_id": tx.owner_id, "ledger": tx.ledger},
    )
    return True


def recompute_account(account: BalanceAccount) -> dict:
    """Derive the cached balance fields from the account's rows."""
    totals = {
        "available_cents": 0,
        "pending_cents": 0,
        "total_earnings_cents": 0,
        "total_withdrawn_cents": 0,
    }
    rows = (
        db.session.query(BalanceTransaction.kind, db.func.coalesce(db.func.sum(BalanceTransaction.amount_cents), 0))
        .filter(BalanceTransaction.account_id == account.id)
        .group_by(BalanceTransaction.kind)
        .all()
    )
    for kind, amount in rows:
        amount = int(amount)
        if kind != KIND_WITHDRAWAL_FAILED:
            totals["available_cents"] += amount
        if kind == KIND_WITHDRAWAL_PENDING:
            totals["pending_cents"] -= amount
        elif kind == KIND_WITHDRAWAL_COMPLETED:
            totals["total_withdrawn_cents"] -= amount
        elif kind in EARNING_KINDS:
            totals["total_earnings_cents"] += amount
    return totals


def verify_account(account: BalanceAccount) -> dict:
    """Return {field: {"cached": x, "derived": y}} for every drifted field (empty when consistent)."""
    derived = recompute_account(account)
    drift = {}
    for key, value in derived.items():
        cached = getattr(account, key)
        if cached != value:
            drift[key] = {"cached": cached, "derived": value}
    return drift


def repair_account(account: BalanceAccount) -> dict:
    """Rewrite cached fields from rows. Returns the drift that was corrected."""
    drift = verify_account(account)
    for key, values in drift.items():
        setattr(account, key, values["derived"])
    if drift:
        logger.warning("Repaired balance drift: %s", drift, extra={"owner_id": account.owner_id, "ledger": account.ledger})
    return drift
