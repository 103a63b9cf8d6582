# Overview: Operator routes for the bank session, transfer signing, and withdrawal overrides.

# backend/marketcore/routes/bank_admin.py
"""
Admin bank routes.

Authentication/authorization is enforced in front of this service; these
endpoints assume an operator caller.
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import MarketError, ValidationError
from ..services import reconciliation_service
from ..services.bank_gateway import get_gateway


bank_admin_bp = Blueprint("bank_admin", __name__, url_prefix="/api/admin")


def _internal_error():
    return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500


def _document_key(data: dict) -> str:
    key = data.get("document_key")
    if key is None or str(key).strip() == "" or not str(key).strip().isdigit():
        raise ValidationError("document_key must be numeric")
    return str(key).strip()


@bank_admin_bp.get("/bank/status")
def bank_status_route():
    gateway = get_gateway()
    return jsonify({"authenticated": gateway.is_authenticated()}), 200


@bank_admin_bp.get("/bank/authorize-url")
def bank_authorize_url_route():
    gateway = get_gateway()
    return jsonify({"url": gateway.authorization_url(request.args.get("state"))}), 200


@bank_admin_bp.post("/bank/callback")
def bank_callback_route():
    """Body: {code} from the OAuth redirect."""
    try:
        data = request.get_json() or {}
        result = get_gateway().exchange_code(data.get("code"))
        return jsonify(result), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to exchange bank authorization code")
        return _internal_error()


@bank_admin_bp.post("/bank/logout")
def bank_logout_route():
    get_gateway().clear_tokens()
    return jsonify({"authenticated": False}), 200


@bank_admin_bp.post("/bank/otp")
def request_otp_route():
    """Body: {document_key}"""
    try:
        data = request.get_json() or {}
        key = _document_key(data)
        get_gateway().request_otp(key)
        return jsonify({"requested": True}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to request OTP")
        return _internal_error()


@bank_admin_bp.post("/bank/sign")
def sign_document_route():
    """Body: {document_key, otp}"""
    try:
        data = request.get_json() or {}
        key = _document_key(data)
        get_gateway().sign_document(key, (data.get("otp") or "").strip())
        return jsonify({"signed": True}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to sign transfer document")
        return _internal_error()


@bank_admin_bp.get("/bank/documents/<document_key>")
def document_status_route(document_key: str):
    try:
        status = get_gateway().get_document_status(_document_key({"document_key": document_key}))
        return jsonify({"document": status.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to fetch document status")
        return _internal_error()


@bank_admin_bp.post("/bank/reconcile")
def reconcile_route():
    try:
        summary = reconciliation_service.reconcile_pending_transfers()
        return jsonify(summary), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Reconciliation sweep failed")
        return _internal_error()


@bank_admin_bp.get("/withdrawals/pending")
def pending_withdrawals_route():
    try:
        rows = reconciliation_service.pending_withdrawals()
        return jsonify({"items": [row.to_dict() for row in rows]}), 200

    except Exception:
        current_app.logger.exception("Failed to list pending withdrawals")
        return _internal_error()


@bank_admin_bp.post("/withdrawals/<int:transaction_id>/check")
def check_withdrawal_route(transaction_id: int):
    try:
        return jsonify(reconciliation_service.check_transaction(transaction_id)), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to check withdrawal")
        return _internal_error()


@bank_admin_bp.post("/withdrawals/<int:transaction_id>/approve")
def approve_withdrawal_route(transaction_id: int):
    try:
        tx = reconciliation_service.approve_withdrawal(transaction_id)
        return jsonify({"transaction": tx.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to approve withdrawal")
        return _internal_error()


@bank_admin_bp.post("/withdrawals/<int:transaction_id>/reject")
def reject_withdrawal_route(transaction_id: int):
    """Body: {reason}"""
    try:
        data = request.get_json(silent=True) or {}
        tx = reconciliation_service.reject_withdrawal(transaction_id, data.get("reason"))
        return jsonify({"transaction": tx.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to reject withdrawal")
        return _internal_error()
