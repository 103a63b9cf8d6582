# Overview: Settles pending bank withdrawals by polling transfer document status.

from __future__ import annotations

import logging

from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..models import BalanceTransaction
from ..models.ledger import KIND_WITHDRAWAL_PENDING
from . import ledger_service
from .bank_gateway import OUTCOME_COMPLETED, OUTCOME_FAILED, get_gateway
from .concurrency import run_with_retry
from .notification_service import notify

logger = logging.getLogger(__name__)

OUTCOME_SETTLED = "settled"


def pending_withdrawals() -> list[BalanceTransaction]:
    return (
        db.session.query(BalanceTransaction)
        .filter(BalanceTransaction.kind == KIND_WITHDRAWAL_PENDING)
        .order_by(BalanceTransaction.created_at.asc(), BalanceTransaction.id.asc())
        .all()
    )


def _settle(transaction_id: int, outcome: str, reason: str | None = None):
    def _op():
        tx = ledger_service.get_transaction(transaction_id, lock=True)
        if outcome == OUTCOME_COMPLETED:
            changed = ledger_service.complete_withdrawal(tx)
        else:
            changed = ledger_service.fail_withdrawal(tx, reason or "Rejected by bank")
        db.session.commit()
        return tx, changed

    tx, changed = run_with_retry(_op)
    if changed:
        if outcome == OUTCOME_COMPLETED:
            notify("send_withdrawal_completed", tx)
        else:
            notify("send_withdrawal_failed", tx, tx.failure_reason)
    return tx, changed


def check_transaction(transaction_id: int) -> dict:
    """
    Query the bank for one pending withdrawal and apply a terminal outcome.

    Returns {"transaction_id", "document_key", "outcome", "status", "applied"}.
    """
    tx = ledger_service.get_transaction(transaction_id)
    if tx.kind != KIND_WITHDRAWAL_PENDING:
        return {
            "transaction_id": tx.id,
            "document_key": tx.bank_document_key,
            "outcome": OUTCOME_SETTLED,
            "status": None,
            "applied": False,
        }
    if not tx.bank_document_key:
        raise ConflictError("Withdrawal has no bank document key", details={"transaction_id": tx.id})

    document_key = tx.bank_document_key
    status = get_gateway().get_document_status(document_key)
    outcome = status.outcome
    applied = False
    if outcome == OUTCOME_COMPLETED:
        _, applied = _settle(transaction_id, OUTCOME_COMPLETED)
    elif outcome == OUTCOME_FAILED:
        reason = f"Bank status {status.status or '-'} ({status.status_text}), result code {status.result_code}"
        _, applied = _settle(transaction_id, OUTCOME_FAILED, reason)

    logger.info(
        "Withdrawal status %s -> %s", status.status, outcome,
        extra={"transaction_id": transaction_id, "document_key": document_key},
    )
    return {
        "transaction_id": transaction_id,
        "document_key": document_key,
        "outcome": outcome,
        "status": status.to_dict(),
        "applied": applied,
    }


def reconcile_pending_transfers() -> dict:
    """
    Poll every pending withdrawal on both ledgers.

    Each row settles in its own transaction; a failing row is counted in
    "errors" and the sweep continues.
    """
    summary = {"checked": 0, "completed": 0, "failed": 0, "still_pending": 0, "skipped": 0, "errors": 0}
    rows = [(tx.id, tx.bank_document_key) for tx in pending_withdrawals()]

    for transaction_id, document_key in rows:
        if not document_key:
            summary["skipped"] += 1
            logger.warning("Pending withdrawal has no document key", extra={"transaction_id": transaction_id})
            continue

        summary["checked"] += 1
        try:
            result = check_transaction(transaction_id)
        except Exception:
            db.session.rollback()
            summary["errors"] += 1
            logger.exception(
                "Reconciliation failed for withdrawal",
                extra={"transaction_id": transaction_id, "document_key": document_key},
            )
            continue

        if result["outcome"] == OUTCOME_COMPLETED:
            summary["completed"] += 1
        elif result["outcome"] == OUTCOME_FAILED:
            summary["failed"] += 1
        elif result["outcome"] == OUTCOME_SETTLED:
            summary["skipped"] += 1
        else:
            summary["still_pending"] += 1

    logger.info(
        "Reconciliation sweep: checked=%s completed=%s failed=%s pending=%s skipped=%s errors=%s",
        summary["checked"], summary["completed"], summary["failed"],
        summary["still_pending"], summary["skipped"], summary["errors"],
    )
    return summary


def approve_withdrawal(transaction_id: int) -> BalanceTransaction:
    """Operator override: mark a pending withdrawal completed."""
    tx = ledger_service.get_transaction(transaction_id)
    if tx.kind != KIND_WITHDRAWAL_PENDING:
        raise ConflictError(f"Withdrawal is already {tx.kind}", details={"transaction_id": transaction_id})
    tx, changed = _settle(transaction_id, OUTCOME_COMPLETED)
    if not changed:
        raise ConflictError(f"Withdrawal is already {tx.kind}", details={"transaction_id": transaction_id})
    logger.info("Withdrawal approved manually", extra={"transaction_id": transaction_id})
    return tx


def reject_withdrawal(transaction_id: int, reason: str | None) -> BalanceTransaction:
    """Operator override: fail a pending withdrawal and return the funds to available."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    tx = ledger_service.get_transaction(transaction_id)
    if tx.kind != KIND_WITHDRAWAL_PENDING:
        raise ConflictError(f"Withdrawal is already {tx.kind}", details={"transaction_id": transaction_id})
    tx, changed = _settle(transaction_id, OUTCOME_FAILED, reason)
    if not changed:
        raise ConflictError(f"Withdrawal is already {tx.kind}", details={"transaction_id": transaction_id})
    logger.info("Withdrawal rejected manually: %s", reason, extra={"transaction_id": transaction_id})
    return tx
