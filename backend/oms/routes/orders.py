# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/oms/routes/orders.py
"""
Order routes.

Handlers parse the request, call the order workflow with g.actor and
translate typed failures with error_response(). Role scoping happens in
the service, against the loaded order row.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..errors import InternalError, OmsError, ValidationError, error_response
from ..models.auth import ROLE_ADMIN, ROLE_STAFF
from ..services import order_service
from ..validation import optional_datetime, optional_str, parse_create_order, require_json_object

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_auth
@require_role(ROLE_ADMIN, ROLE_STAFF)
def create_order_route():
    """
    Create an internal order.

    Body: items[{product_id, quantity}], customer_id, channel_id?,
    shipping{address, city, state, postal_code}?, payment_method?,
    affiliate_id?, discount_cents?, shipping_fee_cents?, notes?
    """
    try:
        data = parse_create_order(request.get_json(silent=True))
        order = order_service.create_order(actor=g.actor, **data)
        return jsonify({"order": order.to_dict(include_items=True)}), 201
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return error_response(InternalError())


@orders_bp.get("")
@require_auth
def list_orders_route():
    """
    List orders visible to the caller.

    Query params: status, payment_status, channel_id, customer_id,
    date_from, date_to (ISO-8601), page, per_page.
    """
    try:
        args = request.args
        filters = {
            "status": args.get("status") or None,
            "payment_status": args.get("payment_status") or None,
            "channel_id": args.get("channel_id", type=int),
            "customer_id": args.get("customer_id", type=int),
            "date_from": optional_datetime(args, "date_from"),
            "date_to": optional_datetime(args, "date_to"),
        }
        result = order_service.list_orders(
            g.actor,
            filters,
            page=args.get("page", type=int),
            per_page=args.get("per_page", type=int),
        )
        return jsonify(result), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return error_response(InternalError())


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id, g.actor)
        data = order.to_dict(include_items=True)
        data["commissions"] = [c.to_dict() for c in order.commission_transactions]
        return jsonify({"order": data}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order %s", order_id)
        return error_response(InternalError())


@orders_bp.patch("/<int:order_id>/status")
@require_auth
def update_status_route(order_id: int):
    """Body: {status, tracking_number?, notes?}"""
    try:
        payload = require_json_object(request.get_json(silent=True))
        new_status = optional_str(payload, "status")
        if not new_status:
            raise ValidationError("status is required")
        extras = {
            "tracking_number": optional_str(payload, "tracking_number", 100),
            "notes": optional_str(payload, "notes"),
        }
        order = order_service.update_status(order_id, new_status, g.actor, extras)
        return jsonify({"order": order.to_dict()}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update status of order %s", order_id)
        return error_response(InternalError())


@orders_bp.patch("/<int:order_id>/payment-status")
@require_auth
@require_role(ROLE_ADMIN, ROLE_STAFF)
def update_payment_status_route(order_id: int):
    """Body: {payment_status}"""
    try:
        payload = require_json_object(request.get_json(silent=True))
        new_status = optional_str(payload, "payment_status")
        if not new_status:
            raise ValidationError("payment_status is required")
        order = order_service.update_payment_status(order_id, new_status, g.actor)
        return jsonify({"order": order.to_dict()}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update payment status of order %s", order_id)
        return error_response(InternalError())
