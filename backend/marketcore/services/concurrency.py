# Overview: Service-layer helpers for row locking and retrying conflicting transactions.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError
from flask import current_app

from ..errors import TransactionAbortError
from ..extensions import db

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 1.0


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id columns still reject the losing writer.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.05):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts) and IntegrityError (a concurrent insert
    took a unique key; the retry re-reads and sees it). Any other exception
    rolls the session back and propagates unchanged. Exhausted retries raise
    TransactionAbortError. attempts defaults to RETRY_ATTEMPTS from config.
    """
    if attempts is None:
        attempts = current_app.config.get("RETRY_ATTEMPTS", 3)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            last_exc = exc
            logger.warning(
                "Concurrent write conflict, retrying: %s", exc.__class__.__name__,
                extra={"attempt": attempt + 1},
            )
            if attempt < attempts - 1:
                time.sleep(min(backoff_base * (2 ** attempt), MAX_BACKOFF_SECONDS))
        except Exception:
            db.session.rollback()
            raise
    raise TransactionAbortError(
        "Transaction aborted after repeated write conflicts",
        details={"attempts": attempts, "cause": last_exc.__class__.__name__ if last_exc else None},
    ) from last_exc
