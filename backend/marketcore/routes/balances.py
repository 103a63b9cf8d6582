# Overview: Flask API routes for seller balances and withdrawals.

from flask import Blueprint, request, jsonify, current_app

from ..errors import MarketError, ValidationError
from ..services import balance_service, ledger_service


balances_bp = Blueprint("balances", __name__, url_prefix="/api/balances")


@balances_bp.get("/<int:owner_id>")
def get_balance_route(owner_id: int):
    try:
        account = balance_service.get_balance(owner_id)
        return jsonify({"balance": account.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load balance")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500


@balances_bp.get("/<int:owner_id>/transactions")
def list_transactions_route(owner_id: int):
    """Query: page (default 1), limit (default 20, max 100), order_id (optional)"""
    try:
        page = request.args.get("page", 1, type=int)
        limit = request.args.get("limit", 20, type=int)
        order_id = request.args.get("order_id", type=int)
        result = balance_service.list_transactions(owner_id, page=page, limit=limit, order_id=order_id)
        return jsonify(result), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list balance transactions")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500


@balances_bp.post("/<int:owner_id>/withdrawals")
def request_withdrawal_route(owner_id: int):
    """
    Withdraw seller earnings to the registered bank account.

    Body: {amount_cents}
    Returns 201 with the withdrawal row, status (completed|pending) and the
    bank document key when the bank accepted the transfer.
    """
    try:
        data = request.get_json() or {}
        if "amount_cents" not in data:
            raise ValidationError("amount_cents required")
        tx = balance_service.request_withdrawal(owner_id, data.get("amount_cents"))
        return jsonify({"transaction": tx.to_dict(), **ledger_service.withdrawal_outcome(tx)}), 201

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to request withdrawal")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500
