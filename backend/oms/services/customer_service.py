# Overview: Customer and sales-channel lookups used by the order workflow and ingestion.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import Customer, SalesChannel
from ..models.channels import CHANNEL_TYPES, CHANNEL_WEBSITE
from oms.time_utils import utcnow


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFound("Customer", customer_id)
    return customer


def upsert_customer(
    email: str,
    full_name: str | None = None,
    phone: str | None = None,
    address: str | None = None,
    city: str | None = None,
    state: str | None = None,
    postal_code: str | None = None,
) -> Customer:
    """
    Find a customer by email or create one.

    Runs inside the caller's unit of work. An existing record is never
    overwritten, only blank contact fields are filled in. A concurrent
    insert of the same email is absorbed by re-reading inside a savepoint.
    """
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("customer email is required")

    customer = db.session.query(Customer).filter_by(email=email).first()
    if customer is None:
        try:
            with db.session.begin_nested():
                customer = Customer(
                    email=email,
                    full_name=(full_name or email.split("@")[0]).strip(),
                    phone=phone,
                    address=address,
                    city=city,
                    state=state,
                    postal_code=postal_code,
                    total_orders=0,
                    total_spent_cents=0,
                )
                db.session.add(customer)
        except IntegrityError:
            customer = db.session.query(Customer).filter_by(email=email).one()
        return customer

    for field, value in (("phone", phone), ("address", address), ("city", city),
                         ("state", state), ("postal_code", postal_code)):
        if value and not getattr(customer, field):
            setattr(customer, field, value)
    return customer


def record_customer_order(customer: Customer, total_cents: int) -> None:
    """Bump the denormalized order aggregates inside the current unit of work."""
    customer.total_orders = Customer.total_orders + 1
    customer.total_spent_cents = Customer.total_spent_cents + total_cents


def get_channel(channel_id: int) -> SalesChannel:
    channel = db.session.get(SalesChannel, channel_id)
    if channel is None:
        raise NotFound("SalesChannel", channel_id)
    if not channel.is_active:
        raise ValidationError(f"Sales channel {channel.name} is inactive")
    return channel


def find_channel(channel_type: str) -> SalesChannel | None:
    return db.session.query(SalesChannel).filter_by(type=channel_type).first()


def resolve_channel(channel_type: str, touch_sync: bool = False) -> SalesChannel:
    """
    Return the channel for a marketplace type, creating it on first use.

    With touch_sync, last_sync_at is stamped in the current unit of work.
    Two first deliveries racing to create the same channel converge on one
    row: the loser's savepoint rolls back and it re-reads the winner's.
    """
    channel_type = (channel_type or "").strip().lower()
    if channel_type not in CHANNEL_TYPES:
        raise ValidationError(f"Unknown marketplace: {channel_type}")

    channel = find_channel(channel_type)
    if channel is None:
        try:
            with db.session.begin_nested():
                channel = SalesChannel(name=channel_type.capitalize(), type=channel_type, is_active=True)
                db.session.add(channel)
        except IntegrityError:
            channel = find_channel(channel_type)
            if channel is None:
                raise
    if touch_sync:
        channel.last_sync_at = utcnow()
    return channel


def default_channel() -> SalesChannel:
    return resolve_channel(CHANNEL_WEBSITE)
