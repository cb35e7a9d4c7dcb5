# backend/oms/routes/inventory.py
"""Stock reports and manual stock movements."""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..errors import InternalError, OmsError, error_response
from ..models.auth import ROLE_ADMIN, ROLE_STAFF
from ..services import inventory_service
from ..validation import MAX_LINE_QUANTITY, coerce_int, optional_str, require_json_object

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/low-stock")
@require_auth
@require_role(ROLE_ADMIN, ROLE_STAFF)
def low_stock_route():
    low = inventory_service.get_low_stock_products()
    out = inventory_service.get_out_of_stock_products()
    return jsonify({
        "low_stock": [p.to_dict() for p in low],
        "out_of_stock": [p.to_dict() for p in out],
        "count": len(low),
    }), 200


@inventory_bp.get("/value")
@require_auth
@require_role(ROLE_ADMIN)
def inventory_value_route():
    return jsonify(inventory_service.calculate_inventory_value()), 200


@inventory_bp.get("/<int:product_id>/transactions")
@require_auth
@require_role(ROLE_ADMIN, ROLE_STAFF)
def product_transactions_route(product_id: int):
    try:
        limit = min(request.args.get("limit", default=50, type=int), 500)
        txs = inventory_service.list_product_transactions(product_id, limit=limit)
        return jsonify({"items": [t.to_dict() for t in txs], "count": len(txs)}), 200
    except OmsError as e:
        return error_response(e)


@inventory_bp.post("/<int:product_id>/add")
@require_auth
@require_role(ROLE_ADMIN, ROLE_STAFF)
def add_stock_route(product_id: int):
    """Body: {quantity, note?}"""
    try:
        payload = require_json_object(request.get_json(silent=True))
        quantity = coerce_int(payload.get("quantity"), "quantity", minimum=1, maximum=MAX_LINE_QUANTITY * 10)
        product = inventory_service.add_stock(product_id, quantity, g.actor.id, optional_str(payload, "note"))
        return jsonify({"product": product.to_dict()}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add stock to product %s", product_id)
        return error_response(InternalError())


@inventory_bp.post("/<int:product_id>/adjust")
@require_auth
@require_role(ROLE_ADMIN, ROLE_STAFF)
def adjust_stock_route(product_id: int):
    """Body: {new_quantity, note?}. Sets stock to an absolute count."""
    try:
        payload = require_json_object(request.get_json(silent=True))
        new_quantity = coerce_int(payload.get("new_quantity"), "new_quantity", minimum=0)
        product = inventory_service.adjust_stock(product_id, new_quantity, g.actor.id, optional_str(payload, "note"))
        return jsonify({"product": product.to_dict()}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock of product %s", product_id)
        return error_response(InternalError())


@inventory_bp.get("/transactions/recent")
@require_auth
@require_role(ROLE_ADMIN, ROLE_STAFF)
def recent_transactions_route():
    """Query: days (default 30), limit (default 100, max 500)."""
    try:
        days = request.args.get("days", default=30, type=int)
        limit = min(request.args.get("limit", default=100, type=int), 500)
        txs = inventory_service.list_recent_transactions(days=days, limit=limit)
        items = []
        for tx in txs:
            row = tx.to_dict()
            row["sku"] = tx.product.sku
            row["product_name"] = tx.product.name
            items.append(row)
        return jsonify({"items": items, "count": len(items), "days": days}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list recent inventory transactions")
        return error_response(InternalError())
