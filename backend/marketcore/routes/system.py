# backend/marketcore/routes/system.py
"""
System health endpoint.

Reports database reachability plus the backlog the scheduled jobs work on,
so a stalled reaper or reconciliation loop is visible from outside.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import BalanceTransaction, Order
from ..models.ledger import KIND_WITHDRAWAL_PENDING
from ..models.orders import STATUS_PENDING
from marketcore.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and job backlogs.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        now = utcnow()
        expired_reservations = db.session.query(Order).filter(
            Order.status == STATUS_PENDING,
            Order.stock_reservation_expires < now,
        ).count()
        pending_withdrawals = db.session.query(BalanceTransaction).filter(
            BalanceTransaction.kind == KIND_WITHDRAWAL_PENDING,
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "expired_reservations": expired_reservations,
                "pending_withdrawals": pending_withdrawals,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_bank_session() -> dict:
    gateway = current_app.extensions.get("bank_gateway")
    if gateway is None:
        return {"status": "degraded", "warning": "Bank gateway not configured"}
    return {
        "status": "healthy",
        "details": {"operator_authenticated": gateway.is_authenticated()},
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    bank_health = check_bank_session()

    if database_health["status"] == "unhealthy":
        overall_status = "unhealthy"
        http_status = 503
    elif bank_health["status"] == "degraded":
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "bank": bank_health,
        }
    }

    return response, http_status
