# Overview: Request decorators for API routes: bearer auth, role gates, webhook signatures.

from functools import wraps

from flask import current_app, g, jsonify, request

from .authorization import Actor
from .services import session_service
from .services.ingestion_service import record_rejected_delivery, verify_signature


def require_auth(f):
    """
    Resolve the bearer token into the caller.

    Sets g.current_user (User) and g.actor (Actor). Returns 401 when the
    header is missing, or the token is unknown, expired or revoked.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        user = session_service.validate_session(token)
        if user is None:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        g.actor = Actor.from_user(user)
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """Allow only the given roles. Must be stacked under @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return jsonify({"error": "Authentication required"}), 401
            if actor.role not in roles:
                current_app.logger.warning(
                    "Role %s denied on %s %s", actor.role, request.method, request.path
                )
                return jsonify({"error": "Access denied", "code": "access_denied"}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def verify_webhook_signature(f):
    """
    Reject webhook calls whose X-Webhook-Signature does not match the body.

    Rejected deliveries are still written to api_logs with their raw body.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        signature = request.headers.get("X-Webhook-Signature")
        if not verify_signature(request.get_data(cache=True), signature):
            current_app.logger.warning("Webhook signature mismatch on %s from %s", request.path, request.remote_addr)
            record_rejected_delivery(
                request.path, request.method, request.get_data(cache=True, as_text=True), "Invalid webhook signature"
            )
            return jsonify({"error": "Invalid webhook signature"}), 401
        return f(*args, **kwargs)

    return decorated_function
