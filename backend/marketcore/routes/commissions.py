# Overview: Flask API routes for sales-manager commissions.

from flask import Blueprint, request, jsonify, current_app

from ..errors import MarketError, ValidationError
from ..services import commission_service, ledger_service


commissions_bp = Blueprint("commissions", __name__, url_prefix="/api/commissions")


def _internal_error():
    return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500


@commissions_bp.get("/validate/<code>")
def validate_ref_code_route(code: str):
    try:
        return jsonify(commission_service.validate_ref_code(code)), 200
    except Exception:
        current_app.logger.exception("Failed to validate referral code")
        return _internal_error()


@commissions_bp.get("/<int:owner_id>")
def commission_stats_route(owner_id: int):
    """Per-status commission totals plus the commission balance."""
    try:
        return jsonify(commission_service.get_stats(owner_id)), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load commission stats")
        return _internal_error()


@commissions_bp.post("/<int:owner_id>/ref-code")
def generate_ref_code_route(owner_id: int):
    try:
        code = commission_service.generate_ref_code(owner_id)
        return jsonify({"sales_ref_code": code}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to generate referral code")
        return _internal_error()


@commissions_bp.put("/<int:owner_id>/rate")
def update_rate_route(owner_id: int):
    """Body: {rate_bps}"""
    try:
        data = request.get_json() or {}
        user = commission_service.update_commission_rate(owner_id, data.get("rate_bps"))
        return jsonify({"user": user.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update commission rate")
        return _internal_error()


@commissions_bp.post("/<int:owner_id>/withdrawals")
def request_withdrawal_route(owner_id: int):
    """Body: {amount_cents}"""
    try:
        data = request.get_json() or {}
        if "amount_cents" not in data:
            raise ValidationError("amount_cents required")
        tx = commission_service.request_withdrawal(owner_id, data.get("amount_cents"))
        return jsonify({"transaction": tx.to_dict(), **ledger_service.withdrawal_outcome(tx)}), 201

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to request commission withdrawal")
        return _internal_error()
