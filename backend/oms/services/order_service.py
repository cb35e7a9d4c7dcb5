"""
Order Workflow.

create_order, update_status and update_payment_status are each one unit
of work: every stock movement, commission row, denormalized total and
status stamp they cause is committed together or not at all. Events are
queued during the work and published by the session after the commit.

Fulfillment and payment are two independent state machines on the same
order row. Both lock that row before reading it and the row carries a
version column, so concurrent updates of the two never overwrite each
other.

actor=None means the system itself (marketplace webhooks). It bypasses
role gates and is never credited with a staff commission.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..errors import (
    AccessDenied,
    InsufficientStock,
    InvalidStatusTransition,
    NotFound,
    ProductUnavailable,
    ValidationError,
)
from ..extensions import db
from ..models import Order, OrderLineItem, Product, User
from ..models.auth import ROLE_AFFILIATE
from ..models.catalog import PRODUCT_STATUS_ACTIVE
from ..models.commissions import COMMISSION_STAFF, COMMISSION_AFFILIATE
from ..models.orders import (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_PACKED,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
    ORDER_STATUSES,
    PAYMENT_PENDING,
    PAYMENT_PAID,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    PAYMENT_STATUSES,
    PAYMENT_METHODS,
)
from ..money import apply_bps
from ..validation import CartItem, merge_cart_items
from oms.authorization import (
    Actor,
    can_create_order,
    can_transition,
    can_update_payment,
    can_view_order,
    order_scope,
)
from oms.time_utils import utcnow
from . import commission_service, events, inventory_service
from .concurrency import begin_write, lock_for_update, run_with_retry
from .customer_service import get_channel, default_channel, get_customer, record_customer_order
from .sequence_service import generate_order_number


ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_CONFIRMED, ORDER_CANCELLED},
    ORDER_CONFIRMED: {ORDER_PROCESSING, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_PACKED, ORDER_CANCELLED},
    ORDER_PACKED: {ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_SHIPPED: {ORDER_DELIVERED, ORDER_REFUNDED},
    ORDER_DELIVERED: {ORDER_REFUNDED},
    ORDER_CANCELLED: set(),
    ORDER_REFUNDED: set(),
}

PAYMENT_TRANSITIONS = {
    PAYMENT_PENDING: {PAYMENT_PAID, PAYMENT_FAILED},
    PAYMENT_PAID: {PAYMENT_REFUNDED},
    PAYMENT_FAILED: set(),
    PAYMENT_REFUNDED: set(),
}

# Status -> timestamp column stamped on first entry
STATUS_TIMESTAMPS = {
    ORDER_CONFIRMED: "confirmed_at",
    ORDER_PACKED: "packed_at",
    ORDER_SHIPPED: "shipped_at",
    ORDER_DELIVERED: "delivered_at",
}

# Entering these gives stock back and voids unpaid commissions
RELEASING_STATUSES = {ORDER_CANCELLED, ORDER_REFUNDED}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in ORDER_TRANSITIONS.get(from_status, set())


def is_valid_payment_transition(from_status: str, to_status: str) -> bool:
    return to_status in PAYMENT_TRANSITIONS.get(from_status, set())


def compute_totals(
    subtotal_cents: int,
    discount_cents: int = 0,
    shipping_fee_cents: int = 0,
    tax_rate_bps: int | None = None,
) -> dict:
    """
    Monetary breakdown for an order.

    tax = subtotal x TAX_RATE_BPS (half-up);
    total = subtotal - discount + shipping_fee + tax.
    """
    if tax_rate_bps is None:
        tax_rate_bps = current_app.config.get("TAX_RATE_BPS", 600)
    if subtotal_cents < 0 or discount_cents < 0 or shipping_fee_cents < 0:
        raise ValidationError("amounts must be >= 0")
    if discount_cents > subtotal_cents:
        raise ValidationError("discount_cents cannot exceed the order subtotal")

    tax_cents = apply_bps(subtotal_cents, tax_rate_bps)
    return {
        "subtotal_cents": subtotal_cents,
        "discount_cents": discount_cents,
        "shipping_fee_cents": shipping_fee_cents,
        "tax_cents": tax_cents,
        "total_cents": subtotal_cents - discount_cents + shipping_fee_cents + tax_cents,
    }


def _normalize_cart(cart_items) -> list[CartItem]:
    if not cart_items:
        raise ValidationError("Order must contain at least one item")
    items = []
    for raw in cart_items:
        if isinstance(raw, CartItem):
            items.append(raw)
        elif isinstance(raw, dict):
            items.append(CartItem(
                product_id=raw.get("product_id"),
                quantity=raw.get("quantity"),
                unit_price_cents=raw.get("unit_price_cents"),
            ))
        else:
            raise ValidationError("Invalid cart item")
    for item in items:
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
    return merge_cart_items(items)


def _resolve_affiliate(affiliate_id: int | None) -> User | None:
    if affiliate_id is None:
        return None
    affiliate = db.session.get(User, affiliate_id)
    if affiliate is None:
        raise NotFound("User", affiliate_id)
    if affiliate.role != ROLE_AFFILIATE or not affiliate.is_active:
        raise ValidationError(f"User {affiliate_id} is not an active affiliate")
    return affiliate


def _lock_cart_products(items: list[CartItem]) -> list[tuple[Product, CartItem]]:
    """Lock each product in cart order and verify it can be sold."""
    locked = []
    for item in items:
        product = lock_for_update(db.session.query(Product).filter_by(id=item.product_id)).first()
        if product is None:
            raise NotFound("Product", item.product_id)
        if product.status != PRODUCT_STATUS_ACTIVE:
            raise ProductUnavailable(product.name, product.status)
        if product.stock_quantity < item.quantity:
            raise InsufficientStock(product.name, product.stock_quantity, item.quantity)
        locked.append((product, item))
    return locked


def place_order(
    *,
    cart_items,
    customer,
    channel,
    shipping: dict | None,
    payment_method: str,
    actor: Actor | None,
    affiliate_id: int | None = None,
    discount_cents: int = 0,
    shipping_fee_cents: int = 0,
    notes: str | None = None,
    status: str = ORDER_PENDING,
    payment_status: str = PAYMENT_PENDING,
    external_order_id: str | None = None,
) -> Order:
    """
    Write one order and everything it implies into the current unit of work.

    The caller has already opened the unit of work with begin_write() and
    owns the commit. Shared by create_order and external ingestion.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {list(PAYMENT_METHODS)}")
    items = _normalize_cart(cart_items)
    affiliate = _resolve_affiliate(affiliate_id)
    shipping = shipping or {}
    actor_id = actor.id if actor is not None else None

    # 1. lock and check every product, in cart order
    locked = _lock_cart_products(items)

    # 2. totals
    lines = [OrderLineItem.snapshot(product, item.quantity, item.unit_price_cents) for product, item in locked]
    totals = compute_totals(sum(line.subtotal_cents for line in lines), discount_cents, shipping_fee_cents)

    # 3. order header and line snapshots
    now = utcnow()
    order = Order(
        order_number=generate_order_number(),
        customer_id=customer.id,
        channel_id=channel.id,
        assigned_staff_id=actor_id if actor is not None and actor.is_staff else None,
        affiliate_id=affiliate.id if affiliate else None,
        external_order_id=external_order_id,
        status=status,
        payment_status=payment_status,
        payment_method=payment_method,
        shipping_address=shipping.get("address") or "",
        shipping_city=shipping.get("city"),
        shipping_state=shipping.get("state"),
        shipping_postal_code=shipping.get("postal_code"),
        notes=notes,
        staff_commission_cents=0,
        affiliate_commission_cents=0,
        **totals,
    )
    stamp = STATUS_TIMESTAMPS.get(status)
    if stamp:
        setattr(order, stamp, now)
    db.session.add(order)
    db.session.flush()

    for line in lines:
        line.order_id = order.id
        db.session.add(line)
    db.session.flush()

    # 4. stock, referenced to this order
    for product, item in locked:
        inventory_service.deduct_stock(
            product.id,
            item.quantity,
            reference_id=order.id,
            actor_id=actor_id,
            note=f"Order {order.order_number}",
        )

    # 5. commissions and their denormalized totals, same unit of work
    if actor is not None and actor.is_staff:
        order.staff_commission_cents = commission_service.create_for_order(
            order.id, actor.id, COMMISSION_STAFF, order.total_cents, at_time=now
        )
    if affiliate is not None:
        order.affiliate_commission_cents = commission_service.create_for_order(
            order.id, affiliate.id, COMMISSION_AFFILIATE, order.total_cents, at_time=now
        )
    if payment_status == PAYMENT_PAID:
        commission_service.approve_for_order(order.id, approver_id=actor_id)

    # 6. customer aggregates
    record_customer_order(customer, order.total_cents)
    db.session.flush()

    events.queue_event(
        events.ORDER_CREATED,
        order_id=order.id,
        order_number=order.order_number,
        total_cents=order.total_cents,
        customer_id=customer.id,
        channel_id=channel.id,
        user_id=actor_id,
        affiliate_id=order.affiliate_id,
    )
    return order


def create_order(
    cart_items,
    customer_id: int,
    channel_id: int | None,
    shipping: dict | None,
    payment_method: str,
    actor: Actor,
    affiliate_id: int | None = None,
    discount_cents: int = 0,
    shipping_fee_cents: int = 0,
    notes: str | None = None,
) -> Order:
    """
    Create an internal order (status pending, payment pending).

    channel_id=None places the order on the website channel. Any failure
    rolls back the whole order: no stock moved, no commission written.
    """
    if actor is None or not can_create_order(actor):
        raise AccessDenied("Only admin or staff can create orders")

    def _op():
        begin_write()
        customer = get_customer(customer_id)
        channel = get_channel(channel_id) if channel_id is not None else default_channel()
        order = place_order(
            cart_items=cart_items,
            customer=customer,
            channel=channel,
            shipping=shipping,
            payment_method=payment_method,
            actor=actor,
            affiliate_id=affiliate_id,
            discount_cents=discount_cents,
            shipping_fee_cents=shipping_fee_cents,
            notes=notes,
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s created by user %s: total=%s items=%d",
            order.order_number, actor.id, order.total_cents, len(order.items),
        )
        return order

    return run_with_retry(_op)


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFound("Order", order_id)
    return order


def update_status(order_id: int, new_status: str, actor: Actor | None, extras: dict | None = None) -> Order:
    """
    Move an order along the fulfillment state machine.

    Cancelling or refunding restores the stock of every line and rejects
    the order's unpaid commissions. extras may carry tracking_number and
    notes.
    """
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid order status: {new_status}")
    extras = extras or {}

    def _op():
        begin_write()
        order = _lock_order(order_id)
        if actor is not None:
            if not can_view_order(actor, order):
                raise AccessDenied()
            if not can_transition(actor, order):
                raise AccessDenied("Not allowed to change this order's status")

        old_status = order.status
        if not is_valid_transition(old_status, new_status):
            raise InvalidStatusTransition(old_status, new_status)

        actor_id = actor.id if actor is not None else None
        if new_status in RELEASING_STATUSES:
            for item in order.items:
                inventory_service.restore_stock(
                    item.product_id,
                    item.quantity,
                    reference_id=order.id,
                    actor_id=actor_id,
                    note=f"Order {order.order_number} {new_status}",
                )
            commission_service.reject_for_order(order.id)

        order.status = new_status
        stamp = STATUS_TIMESTAMPS.get(new_status)
        if stamp and getattr(order, stamp) is None:
            setattr(order, stamp, utcnow())
        if extras.get("tracking_number"):
            order.tracking_number = extras["tracking_number"]
        if extras.get("notes"):
            order.notes = extras["notes"]
        db.session.flush()

        events.queue_event(
            events.ORDER_STATUS_CHANGED,
            order_id=order.id,
            order_number=order.order_number,
            from_status=old_status,
            to_status=new_status,
            user_id=actor_id,
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s status %s -> %s by %s", order.order_number, old_status, new_status, actor_id or "system"
        )
        return order

    return run_with_retry(_op)


def update_payment_status(order_id: int, new_payment_status: str, actor: Actor | None) -> Order:
    """
    Move an order along the payment state machine.

    paid approves the order's pending commissions; refunded rejects the
    pending and approved ones.
    """
    if new_payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {new_payment_status}")
    if actor is not None and not can_update_payment(actor):
        raise AccessDenied("Only admin or staff can update payment status")

    def _op():
        begin_write()
        order = _lock_order(order_id)
        if actor is not None and not can_view_order(actor, order):
            raise AccessDenied()

        old_status = order.payment_status
        if not is_valid_payment_transition(old_status, new_payment_status):
            raise InvalidStatusTransition(old_status, new_payment_status, machine="payment")

        actor_id = actor.id if actor is not None else None
        if new_payment_status == PAYMENT_PAID:
            commission_service.approve_for_order(order.id, approver_id=actor_id)
        elif new_payment_status == PAYMENT_REFUNDED:
            commission_service.reject_for_order(order.id)

        order.payment_status = new_payment_status
        db.session.flush()

        events.queue_event(
            events.ORDER_PAYMENT_STATUS_CHANGED,
            order_id=order.id,
            order_number=order.order_number,
            from_status=old_status,
            to_status=new_payment_status,
            total_cents=order.total_cents,
            user_id=actor_id,
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s payment %s -> %s by %s",
            order.order_number, old_status, new_payment_status, actor_id or "system",
        )
        return order

    return run_with_retry(_op)


def get_order(order_id: int, actor: Actor) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    if not can_view_order(actor, order):
        raise AccessDenied()
    return order


def get_order_by_number(order_number: str) -> Order | None:
    return db.session.query(Order).filter_by(order_number=order_number).first()


def list_orders(
    actor: Actor,
    filters: dict | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Role-scoped order listing with optional filters and pagination.

    Filters: status, payment_status, channel_id, customer_id, date_from,
    date_to (datetimes, inclusive).
    """
    filters = filters or {}
    query = order_scope(db.session.query(Order), actor, Order)

    status = filters.get("status")
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid order status: {status}")
        query = query.filter(Order.status == status)

    payment_status = filters.get("payment_status")
    if payment_status:
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status: {payment_status}")
        query = query.filter(Order.payment_status == payment_status)

    if filters.get("channel_id") is not None:
        query = query.filter(Order.channel_id == filters["channel_id"])
    if filters.get("customer_id") is not None:
        query = query.filter(Order.customer_id == filters["customer_id"])

    date_from: datetime | None = filters.get("date_from")
    date_to: datetime | None = filters.get("date_to")
    if date_from is not None:
        query = query.filter(Order.created_at >= date_from)
    if date_to is not None:
        query = query.filter(Order.created_at <= date_to)

    query = query.order_by(Order.created_at.desc(), Order.id.desc())

    if page is None:
        orders = query.all()
        return {"items": [o.to_dict() for o in orders], "count": len(orders)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    orders = query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [o.to_dict() for o in orders],
        "count": len(orders),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
