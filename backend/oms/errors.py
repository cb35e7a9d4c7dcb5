"""
Error taxonomy for the order workflow.

Services raise these; routes translate them to JSON with error_response().
Every business failure carries a stable `code` so callers can tell "your
request was invalid" apart from "system failure, try again".
"""

from __future__ import annotations

from flask import jsonify


class OmsError(Exception):
    """Base class for typed service failures."""

    code = "error"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(OmsError):
    """Malformed or missing input."""

    code = "validation_error"
    http_status = 400


class AccessDenied(OmsError):
    code = "access_denied"
    http_status = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFound(OmsError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class ConflictError(OmsError):
    """Business rule conflict (duplicate config, referenced product, ...)."""

    code = "conflict"
    http_status = 409


class InsufficientStock(OmsError):
    code = "insufficient_stock"
    http_status = 409

    def __init__(self, product_name: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}, requested: {requested}",
            {"product_name": product_name, "available": available, "requested": requested},
        )
        self.product_name = product_name
        self.available = available
        self.requested = requested


class ProductUnavailable(OmsError):
    code = "product_unavailable"
    http_status = 409

    def __init__(self, product_name: str, status: str):
        super().__init__(
            f"Product {product_name} is not available for sale",
            {"product_name": product_name, "status": status},
        )
        self.product_name = product_name


class InvalidStatusTransition(OmsError):
    code = "invalid_status_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str, machine: str = "order"):
        super().__init__(
            f"Cannot change {machine} status from {from_status} to {to_status}",
            {"from": from_status, "to": to_status, "machine": machine},
        )
        self.from_status = from_status
        self.to_status = to_status


class InternalError(OmsError):
    """Unexpected failure; the message never carries internal detail."""

    code = "internal_error"
    http_status = 500

    def __init__(self):
        super().__init__("Operation failed")


def error_response(exc: OmsError):
    return jsonify(exc.to_dict()), exc.http_status
