# backend/oms/routes/commissions.py
"""Commission listing, approval, payout and config routes."""

from flask import Blueprint, current_app, g, jsonify, request

from ..authorization import can_manage_commissions
from ..decorators import require_auth, require_role
from ..errors import InternalError, OmsError, error_response
from ..models.auth import ROLE_ADMIN
from ..services import commission_service
from ..validation import coerce_int, optional_datetime, require_json_object, require_str

commissions_bp = Blueprint("commissions", __name__, url_prefix="/api/commissions")


@commissions_bp.get("")
@require_auth
def list_commissions_route():
    """Admins see every commission; staff and affiliates only their own."""
    try:
        args = request.args
        filters = {
            "status": args.get("status") or None,
            "commission_type": args.get("commission_type") or None,
            "user_id": args.get("user_id", type=int),
            "order_id": args.get("order_id", type=int),
        }
        limit = min(args.get("limit", default=100, type=int), 500)
        items = commission_service.list_transactions(g.actor, filters, limit=limit)
        return jsonify({"items": [c.to_dict() for c in items], "count": len(items)}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list commissions")
        return error_response(InternalError())


@commissions_bp.get("/summary")
@require_auth
def commission_summary_route():
    try:
        if can_manage_commissions(g.actor):
            user_id = request.args.get("user_id", type=int)
        else:
            user_id = g.actor.id
        return jsonify({"user_id": user_id, "summary": commission_service.get_summary(user_id)}), 200
    except Exception:
        current_app.logger.exception("Failed to build commission summary")
        return error_response(InternalError())


@commissions_bp.get("/monthly")
@require_auth
def monthly_earnings_route():
    """Per-month totals. Admins may pass user_id; everyone else sees their own."""
    try:
        if can_manage_commissions(g.actor):
            user_id = request.args.get("user_id", type=int)
        else:
            user_id = g.actor.id
        months = request.args.get("months", default=6, type=int)
        rows = commission_service.get_monthly_earnings(user_id, months)
        return jsonify({"user_id": user_id, "months": months, "items": rows}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build monthly commission earnings")
        return error_response(InternalError())


@commissions_bp.get("/leaderboard")
@require_auth
def leaderboard_route():
    try:
        period = request.args.get("period", "month")
        limit = min(request.args.get("limit", default=20, type=int), 100)
        rows = commission_service.get_leaderboard(period, limit=limit)
        return jsonify({"period": period, "items": rows}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build commission leaderboard")
        return error_response(InternalError())


@commissions_bp.post("/<int:commission_id>/approve")
@require_auth
@require_role(ROLE_ADMIN)
def approve_commission_route(commission_id: int):
    try:
        tx = commission_service.approve_commission(commission_id, g.actor.id)
        return jsonify({"commission": tx.to_dict()}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to approve commission %s", commission_id)
        return error_response(InternalError())


@commissions_bp.post("/<int:commission_id>/pay")
@require_auth
@require_role(ROLE_ADMIN)
def pay_commission_route(commission_id: int):
    try:
        tx = commission_service.mark_paid(commission_id, g.actor.id)
        return jsonify({"commission": tx.to_dict()}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark commission %s paid", commission_id)
        return error_response(InternalError())


@commissions_bp.get("/configs")
@require_auth
@require_role(ROLE_ADMIN)
def list_configs_route():
    configs = commission_service.list_configs(
        user_id=request.args.get("user_id", type=int),
        active_only=request.args.get("active") in ("1", "true", "yes"),
    )
    return jsonify({"items": [c.to_dict() for c in configs], "count": len(configs)}), 200


@commissions_bp.post("/configs")
@require_auth
@require_role(ROLE_ADMIN)
def create_config_route():
    """
    Body: {user_id, commission_type: percentage|fixed, commission_value,
    effective_from?, effective_until?}

    commission_value is basis points for percentage (500 = 5%) and cents
    for fixed.
    """
    try:
        payload = require_json_object(request.get_json(silent=True))
        config = commission_service.create_config(
            user_id=coerce_int(payload.get("user_id"), "user_id", minimum=1),
            commission_type=require_str(payload, "commission_type"),
            commission_value=coerce_int(payload.get("commission_value"), "commission_value", minimum=0),
            effective_from=optional_datetime(payload, "effective_from"),
            effective_until=optional_datetime(payload, "effective_until"),
        )
        return jsonify({"config": config.to_dict()}), 201
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create commission config")
        return error_response(InternalError())


@commissions_bp.post("/configs/<int:config_id>/deactivate")
@require_auth
@require_role(ROLE_ADMIN)
def deactivate_config_route(config_id: int):
    try:
        config = commission_service.deactivate_config(config_id)
        return jsonify({"config": config.to_dict()}), 200
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate commission config %s", config_id)
        return error_response(InternalError())
