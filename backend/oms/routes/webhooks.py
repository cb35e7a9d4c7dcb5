# backend/oms/routes/webhooks.py
"""
Marketplace webhooks.

No bearer token: callers prove themselves with an HMAC signature of the
raw body (X-Webhook-Signature) when WEBHOOK_SECRET is configured. A
replayed delivery answers 200 with the original order instead of 201.
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import verify_webhook_signature
from ..errors import InternalError, OmsError, error_response
from ..services import ingestion_service

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/orders/external")
@verify_webhook_signature
def external_order_webhook():
    try:
        result = ingestion_service.inject_external_order(
            request.get_json(silent=True),
            endpoint=request.path,
            method=request.method,
            raw_body=request.get_data(cache=True, as_text=True),
        )
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("External order webhook failed")
        return error_response(InternalError())

    order = result["order"]
    body = {
        "order": order.to_dict(include_items=True),
        "duplicate": result["duplicate"],
        "skipped_skus": result["skipped_skus"],
    }
    return jsonify(body), 200 if result["duplicate"] else 201


@webhooks_bp.post("/payments/confirm")
@verify_webhook_signature
def payment_confirmation_webhook():
    try:
        result = ingestion_service.confirm_external_payment(
            request.get_json(silent=True),
            endpoint=request.path,
            method=request.method,
            raw_body=request.get_data(cache=True, as_text=True),
        )
    except OmsError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Payment confirmation webhook failed")
        return error_response(InternalError())

    return jsonify({"order": result["order"].to_dict(), "duplicate": result["duplicate"]}), 200
