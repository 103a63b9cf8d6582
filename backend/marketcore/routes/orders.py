# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/marketcore/routes/orders.py
"""Order lifecycle API routes"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import MarketError
from ..services import order_service, reservation_service
from marketcore.time_utils import parse_iso_datetime


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _internal_error():
    return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR", "details": {}}), 500


@orders_bp.post("")
def create_order_route():
    """
    Create an order and reserve stock for every line.

    Body: {items: [{product_id, qty, size?, color?, age_group?}], user_id? | guest: {email, name?, phone?},
           shipping?, payment_method?, sales_ref_code?, external_order_id?,
           shipping_price_cents?, tax_price_cents?}
    """
    try:
        data = request.get_json() or {}
        order = order_service.create_order(
            data.get("items"),
            user_id=data.get("user_id"),
            guest=data.get("guest"),
            shipping=data.get("shipping"),
            payment_method=data.get("payment_method"),
            sales_ref_code=data.get("sales_ref_code"),
            external_order_id=data.get("external_order_id"),
            shipping_price_cents=data.get("shipping_price_cents", 0),
            tax_price_cents=data.get("tax_price_cents", 0),
        )
        return jsonify({"order": order.to_dict()}), 201

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create order")
        return _internal_error()


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return jsonify({"order": order.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load order")
        return _internal_error()


@orders_bp.post("/<int:order_id>/pay")
def confirm_payment_route(order_id: int):
    """Body: {payment_result: {id, status, update_time, email}}"""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.confirm_payment(order_id, payment_result=data.get("payment_result"))
        return jsonify({"order": order.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to confirm payment")
        return _internal_error()


@orders_bp.post("/external/<external_order_id>/pay")
def confirm_external_payment_route(external_order_id: str):
    """Payment provider callback keyed by the provider's order id."""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.confirm_payment(
            external_order_id=external_order_id,
            payment_result=data.get("payment_result"),
        )
        return jsonify({"order": order.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to confirm external payment")
        return _internal_error()


@orders_bp.post("/<int:order_id>/deliver")
def mark_delivered_route(order_id: int):
    try:
        order = order_service.mark_delivered(order_id)
        return jsonify({"order": order.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to mark order delivered")
        return _internal_error()


@orders_bp.post("/<int:order_id>/cancel")
def cancel_order_route(order_id: int):
    """Body: {reason?}"""
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.cancel_order(order_id, data.get("reason"))
        return jsonify({"order": order.to_dict()}), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return _internal_error()


@orders_bp.post("/release-expired")
def release_expired_route():
    """
    Run the reservation sweep on demand.

    Body: {now?: ISO-8601, limit?: int}
    """
    try:
        data = request.get_json(silent=True) or {}
        try:
            now = parse_iso_datetime(data.get("now"))
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid now timestamp", "code": "VALIDATION_ERROR", "details": {}}), 400
        summary = reservation_service.release_expired_reservations(now=now, limit=data.get("limit"))
        return jsonify(summary), 200

    except MarketError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to release expired reservations")
        return _internal_error()
