"""
Ingestion Gateway: marketplace orders and payment confirmations.

Payloads arrive already normalized (one JSON shape for every marketplace).
Every call is recorded in api_logs before any order work starts and the
row is completed with the outcome afterwards, in separate transactions, so
the audit trail survives a rolled-back order.

Deliveries are at-least-once. A replayed (marketplace, external_order_id)
returns the order created by the first delivery.
"""

from __future__ import annotations

import hashlib
import hmac
import json

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import InvalidStatusTransition, NotFound, OmsError, ValidationError
from ..extensions import db
from ..models import ApiLog, Order, Product
from ..models.orders import ORDER_CONFIRMED, PAYMENT_PAID, PAYMENT_PENDING, PAYMENT_METHOD_COD
from ..validation import CartItem, parse_external_order, require_json_object, require_str
from . import order_service
from .catalog_service import get_product_by_sku
from .concurrency import begin_write, run_with_retry
from .customer_service import resolve_channel, upsert_customer

ORDERS_ENDPOINT = "/api/webhooks/orders/external"
PAYMENTS_ENDPOINT = "/api/webhooks/payments/confirm"


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None = None) -> bool:
    """
    HMAC-SHA256 of the raw body, hex encoded.

    With no secret configured every request is accepted.
    """
    if secret is None:
        secret = current_app.config.get("WEBHOOK_SECRET", "")
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha256).hexdigest()
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(expected, signature.strip().lower())


def _dump(value) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _start_log(endpoint: str, method: str, payload, raw_body: str | None = None) -> int:
    """Record the delivery before any work. The raw body wins over the parsed payload."""
    request_payload = raw_body if raw_body is not None else _dump(payload)
    log = ApiLog(endpoint=endpoint, method=method, request_payload=request_payload, success=None)
    db.session.add(log)
    db.session.commit()
    current_app.logger.info("Webhook %s %s received (log %s): %s", method, endpoint, log.id, log.request_payload)
    return log.id


def _finish_log(log_id: int, *, success: bool, response=None, error: str | None = None, channel_id=None) -> None:
    log = db.session.get(ApiLog, log_id)
    if log is None:
        return
    log.success = success
    log.response_payload = _dump(response) if response is not None else None
    log.error_message = error
    if channel_id is not None:
        log.channel_id = channel_id
    db.session.commit()
    if success:
        current_app.logger.info("Webhook log %s completed: %s", log_id, log.response_payload)
    else:
        current_app.logger.warning("Webhook log %s failed: %s", log_id, error)


def record_rejected_delivery(endpoint: str, method: str, raw_body: str | None, error: str) -> int:
    """Audit a delivery refused before it reached the gateway, e.g. a bad signature."""
    log_id = _start_log(endpoint, method, None, raw_body or "")
    _finish_log(log_id, success=False, error=error)
    return log_id


def _find_existing(channel_id: int, external_order_id: str) -> Order | None:
    return (
        db.session.query(Order)
        .filter_by(channel_id=channel_id, external_order_id=external_order_id)
        .first()
    )


def _map_items(items: list[dict]) -> tuple[list[CartItem], list[str]]:
    """Map marketplace SKUs to products. Unknown SKUs are skipped, not fatal."""
    mapped: list[CartItem] = []
    skipped: list[str] = []
    for item in items:
        product = get_product_by_sku(item["sku"])
        if product is None:
            current_app.logger.warning("Unmapped marketplace SKU %s skipped", item["sku"])
            skipped.append(item["sku"])
            continue
        mapped.append(CartItem(
            product_id=product.id,
            quantity=item["quantity"],
            unit_price_cents=item["price_cents"],
        ))
    return mapped, skipped


def _ingest(data: dict) -> dict:
    begin_write()
    channel = resolve_channel(data["marketplace"], touch_sync=True)

    existing = _find_existing(channel.id, data["external_order_id"])
    if existing is not None:
        db.session.commit()
        return {"order": existing, "duplicate": True, "skipped_skus": [], "channel_id": channel.id}

    cart, skipped = _map_items(data["items"])
    if not cart:
        raise ValidationError(
            "No order items could be mapped to products",
            {"skipped_skus": skipped},
        )

    customer = upsert_customer(
        email=data["customer"]["email"],
        full_name=data["customer"]["name"],
        phone=data["customer"]["phone"],
        address=data["shipping"]["address"] or None,
        city=data["shipping"]["city"],
        state=data["shipping"]["state"],
        postal_code=data["shipping"]["postal_code"],
    )

    # Discounts apply to the lines we kept; a discount larger than those is capped
    discount = data["totals"]["discount_cents"]
    if skipped:
        kept_subtotal = sum(
            (item.unit_price_cents if item.unit_price_cents is not None else _catalog_price(item.product_id))
            * item.quantity
            for item in cart
        )
        if discount > kept_subtotal:
            current_app.logger.warning(
                "Discount %s exceeds mapped subtotal %s for %s; capping",
                discount, kept_subtotal, data["external_order_id"],
            )
            discount = kept_subtotal

    payment_method = data["payment_method"]
    order = order_service.place_order(
        cart_items=cart,
        customer=customer,
        channel=channel,
        shipping=data["shipping"],
        payment_method=payment_method,
        actor=None,
        affiliate_id=data["affiliate_id"],
        discount_cents=discount,
        shipping_fee_cents=data["totals"]["shipping_fee_cents"],
        notes=data["notes"],
        status=ORDER_CONFIRMED,
        payment_status=PAYMENT_PENDING if payment_method == PAYMENT_METHOD_COD else PAYMENT_PAID,
        external_order_id=data["external_order_id"],
    )
    db.session.commit()
    return {"order": order, "duplicate": False, "skipped_skus": skipped, "channel_id": channel.id}


def _catalog_price(product_id: int) -> int:
    return db.session.query(Product.price_cents).filter_by(id=product_id).scalar() or 0


def inject_external_order(
    payload, endpoint: str = ORDERS_ENDPOINT, method: str = "POST", raw_body: str | None = None
) -> dict:
    """
    Create an order from a normalized marketplace payload.

    Returns {"order", "duplicate", "skipped_skus"}. Business failures are
    logged to api_logs and re-raised for the route to translate.
    """
    log_id = _start_log(endpoint, method, payload, raw_body)
    try:
        data = parse_external_order(payload)
        try:
            result = run_with_retry(lambda: _ingest(data))
        except IntegrityError:
            # A concurrent delivery of the same order won the unique constraint
            channel = resolve_channel(data["marketplace"])
            existing = _find_existing(channel.id, data["external_order_id"])
            if existing is None:
                raise
            result = {"order": existing, "duplicate": True, "skipped_skus": [], "channel_id": channel.id}
    except OmsError as exc:
        _finish_log(log_id, success=False, error=exc.message, response=exc.to_dict())
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("External order ingestion failed (log %s)", log_id)
        _finish_log(log_id, success=False, error="Operation failed")
        raise

    order = result["order"]
    if result["duplicate"]:
        current_app.logger.info(
            "Duplicate delivery of %s order %s; returning %s",
            data["marketplace"], data["external_order_id"], order.order_number,
        )
    if result["skipped_skus"]:
        current_app.logger.warning(
            "Order %s created without unmapped SKUs: %s", order.order_number, ", ".join(result["skipped_skus"])
        )
    _finish_log(
        log_id,
        success=True,
        channel_id=result["channel_id"],
        response={
            "order_id": order.id,
            "order_number": order.order_number,
            "duplicate": result["duplicate"],
            "skipped_skus": result["skipped_skus"],
        },
    )
    return result


def confirm_external_payment(
    payload, endpoint: str = PAYMENTS_ENDPOINT, method: str = "POST", raw_body: str | None = None
) -> dict:
    """
    Mark a marketplace order paid.

    Returns {"order", "duplicate"}; duplicate is True when the order was
    already paid by an earlier delivery.
    """
    log_id = _start_log(endpoint, method, payload, raw_body)
    try:
        payload = require_json_object(payload)
        order_number = require_str(payload, "order_number", 50)
        order = order_service.get_order_by_number(order_number)
        if order is None:
            raise NotFound("Order", order_number)

        # Already-paid is decided under the order lock
        try:
            order = order_service.update_payment_status(order.id, PAYMENT_PAID, actor=None)
            duplicate = False
        except InvalidStatusTransition as exc:
            if exc.from_status != PAYMENT_PAID:
                raise
            order = db.session.get(Order, order.id)
            duplicate = True
    except OmsError as exc:
        _finish_log(log_id, success=False, error=exc.message, response=exc.to_dict())
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Payment confirmation failed (log %s)", log_id)
        _finish_log(log_id, success=False, error="Operation failed")
        raise

    _finish_log(
        log_id,
        success=True,
        channel_id=order.channel_id,
        response={"order_id": order.id, "order_number": order.order_number, "duplicate": duplicate},
    )
    return {"order": order, "duplicate": duplicate}
