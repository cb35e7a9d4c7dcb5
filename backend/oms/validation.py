"""
Request payload parsing.

Routes hand raw JSON to these helpers and receive plain dicts of cleaned
values, or a ValidationError naming the offending field. Money and
quantities are integers only: floats, decimals and scientific notation are
rejected rather than rounded.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .errors import ValidationError
from .models.orders import PAYMENT_METHODS, PAYMENT_METHOD_COD
from .time_utils import parse_iso_datetime


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999
MAX_LINE_QUANTITY = 10_000


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """Strict integer coercion: ints and digit strings only."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def optional_int(payload: dict, field: str, **bounds) -> int | None:
    value = payload.get(field)
    if value is None or value == "":
        return None
    return coerce_int(value, field, **bounds)


def optional_str(payload: dict, field: str, max_length: int | None = None) -> str | None:
    value = payload.get(field)
    if value is None:
        return None
    if not isinstance(value, (str, int)):
        raise ValidationError(f"{field} must be a string")
    value = str(value).strip()
    if not value:
        return None
    if max_length and len(value) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return value


def require_str(payload: dict, field: str, max_length: int | None = None) -> str:
    value = optional_str(payload, field, max_length)
    if value is None:
        raise ValidationError(f"{field} is required")
    return value


def optional_datetime(payload: dict, field: str) -> datetime | None:
    value = payload.get(field)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def require_json_object(payload) -> dict:
    if payload is None:
        raise ValidationError("JSON body is required")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def parse_payment_method(value: Any) -> str:
    if value is None or value == "":
        return PAYMENT_METHOD_COD
    if value not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {list(PAYMENT_METHODS)}")
    return value


@dataclass(frozen=True)
class CartItem:
    product_id: int
    quantity: int
    unit_price_cents: int | None = None


def merge_cart_items(items: list[CartItem]) -> list[CartItem]:
    """
    Collapse repeated products into one line each.

    Order of first appearance is kept; that order is the lock order.
    """
    merged: dict[int, CartItem] = {}
    for item in items:
        prior = merged.get(item.product_id)
        if prior is None:
            merged[item.product_id] = item
            continue
        if prior.unit_price_cents != item.unit_price_cents:
            raise ValidationError(f"Conflicting prices for product {item.product_id}")
        merged[item.product_id] = CartItem(item.product_id, prior.quantity + item.quantity, prior.unit_price_cents)
    return list(merged.values())


def parse_cart_items(raw_items: Any) -> list[CartItem]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        items.append(CartItem(
            product_id=coerce_int(raw.get("product_id"), f"items[{idx}].product_id", minimum=1),
            quantity=coerce_int(raw.get("quantity"), f"items[{idx}].quantity", minimum=1, maximum=MAX_LINE_QUANTITY),
        ))
    return merge_cart_items(items)


def parse_shipping(raw: Any) -> dict:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("shipping must be an object")
    return {
        "address": optional_str(raw, "address") or "",
        "city": optional_str(raw, "city", 50),
        "state": optional_str(raw, "state", 50),
        "postal_code": optional_str(raw, "postal_code", 20),
    }


def parse_create_order(payload) -> dict:
    """Validate POST /api/orders."""
    payload = require_json_object(payload)
    return {
        "cart_items": parse_cart_items(payload.get("items")),
        "customer_id": coerce_int(payload.get("customer_id"), "customer_id", minimum=1),
        "channel_id": optional_int(payload, "channel_id", minimum=1),
        "shipping": parse_shipping(payload.get("shipping")),
        "payment_method": parse_payment_method(payload.get("payment_method")),
        "affiliate_id": optional_int(payload, "affiliate_id", minimum=1),
        "discount_cents": optional_int(payload, "discount_cents", minimum=0, maximum=MAX_PRICE_CENTS) or 0,
        "shipping_fee_cents": optional_int(payload, "shipping_fee_cents", minimum=0, maximum=MAX_PRICE_CENTS) or 0,
        "notes": optional_str(payload, "notes"),
    }


def parse_external_order(payload) -> dict:
    """
    Validate a normalized marketplace order.

    Line items are kept as given (including SKUs we may not know); mapping
    to products happens in the ingestion service.
    """
    payload = require_json_object(payload)

    customer = payload.get("customer")
    if not isinstance(customer, dict):
        raise ValidationError("customer is required")
    email = require_str(customer, "email", 100).lower()
    if "@" not in email:
        raise ValidationError("customer.email is invalid")

    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        items.append({
            "sku": require_str(raw, "sku", 50).upper(),
            "name": optional_str(raw, "name", 200),
            "quantity": coerce_int(raw.get("quantity"), f"items[{idx}].quantity", minimum=1, maximum=MAX_LINE_QUANTITY),
            "price_cents": optional_int(raw, "price_cents", minimum=0, maximum=MAX_PRICE_CENTS),
        })

    totals = payload.get("totals") or {}
    if not isinstance(totals, dict):
        raise ValidationError("totals must be an object")

    return {
        "marketplace": require_str(payload, "marketplace", 16).lower(),
        "external_order_id": require_str(payload, "external_order_id", 100),
        "customer": {
            "email": email,
            "name": optional_str(customer, "name", 100),
            "phone": optional_str(customer, "phone", 20),
        },
        "items": items,
        "shipping": parse_shipping(payload.get("shipping")),
        "totals": {
            "discount_cents": optional_int(totals, "discount_cents", minimum=0, maximum=MAX_PRICE_CENTS) or 0,
            "shipping_fee_cents": optional_int(totals, "shipping_fee_cents", minimum=0, maximum=MAX_PRICE_CENTS) or 0,
            "total_cents": optional_int(totals, "total_cents", minimum=0),
        },
        "payment_method": parse_payment_method(payload.get("payment_method")),
        "affiliate_id": optional_int(payload, "affiliate_id", minimum=1),
        "notes": optional_str(payload, "notes"),
    }
