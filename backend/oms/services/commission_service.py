"""
Commission Engine.

Resolves the rule an earner is on at a given instant, freezes the computed
amount into a CommissionTransaction, and drives each transaction through
pending -> approved -> paid (or -> rejected).

The bulk operations (create_for_order, approve_for_order, reject_for_order)
run inside the caller's unit of work; the order workflow owns the commit.
Single-row operations (approve_commission, mark_paid) and config management
are their own unit of work.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import and_, func, or_

from ..errors import ConflictError, InvalidStatusTransition, NotFound, ValidationError
from ..extensions import db
from ..models import CommissionConfig, CommissionTransaction, User
from ..models.auth import ROLE_AFFILIATE, ROLE_STAFF
from ..models.commissions import (
    RATE_PERCENTAGE,
    RATE_TYPES,
    COMMISSION_TYPES,
    COMMISSION_STAFF,
    COMMISSION_AFFILIATE,
    COMMISSION_PENDING,
    COMMISSION_APPROVED,
    COMMISSION_PAID,
    COMMISSION_REJECTED,
    COMMISSION_STATUSES,
)
from ..money import apply_bps
from oms.authorization import commission_scope
from oms.time_utils import utcnow, to_utc_naive
from . import events
from .concurrency import begin_write, lock_for_update, run_with_retry


# Allowed status changes per commission transaction
COMMISSION_TRANSITIONS = {
    COMMISSION_PENDING: {COMMISSION_APPROVED, COMMISSION_REJECTED},
    COMMISSION_APPROVED: {COMMISSION_PAID, COMMISSION_REJECTED},
    COMMISSION_PAID: set(),
    COMMISSION_REJECTED: set(),
}


def _check_transition(tx: CommissionTransaction, new_status: str) -> None:
    if new_status not in COMMISSION_TRANSITIONS.get(tx.status, set()):
        raise InvalidStatusTransition(tx.status, new_status, machine="commission")


# ---------------------------------------------------------------------------
# Rule resolution
# ---------------------------------------------------------------------------

def resolve_config(user_id: int, at_time: datetime | None = None) -> CommissionConfig | None:
    """
    Return the config in force for an earner at `at_time`, or None.

    None means the earner currently earns nothing; it is not an error.
    """
    at_time = to_utc_naive(at_time) if at_time is not None else utcnow()

    matches = (
        db.session.query(CommissionConfig)
        .filter(
            CommissionConfig.user_id == user_id,
            CommissionConfig.is_active.is_(True),
            CommissionConfig.effective_from <= at_time,
            or_(CommissionConfig.effective_until.is_(None), CommissionConfig.effective_until >= at_time),
        )
        .order_by(CommissionConfig.effective_from.desc(), CommissionConfig.id.desc())
        .all()
    )
    if not matches:
        return None
    if len(matches) > 1:
        current_app.logger.warning(
            "Multiple effective commission configs for user %s at %s: %s; using %s",
            user_id, at_time.isoformat(), [c.id for c in matches], matches[0].id,
        )
    return matches[0]


def _amount_for(config: CommissionConfig | None, order_total_cents: int) -> int:
    if config is None:
        return 0
    if config.commission_type == RATE_PERCENTAGE:
        return apply_bps(order_total_cents, config.commission_value)
    return config.commission_value


def calculate_amount(user_id: int, order_total_cents: int, at_time: datetime | None = None) -> int:
    """Percentage configs take bps of the total (half-up); fixed configs pay a flat amount."""
    if order_total_cents < 0:
        raise ValidationError("order total must be >= 0")
    return _amount_for(resolve_config(user_id, at_time), order_total_cents)


# ---------------------------------------------------------------------------
# Lifecycle driven by the order workflow
# ---------------------------------------------------------------------------

def create_for_order(
    order_id: int,
    user_id: int,
    commission_type: str,
    order_total_cents: int,
    at_time: datetime | None = None,
) -> int:
    """
    Freeze one commission for (order, earner, commission_type).

    Returns the amount in cents. Zero means no row was written. A second
    call for the same key returns the stored amount without inserting.
    """
    if commission_type not in COMMISSION_TYPES:
        raise ValidationError(f"Invalid commission type: {commission_type}")

    existing = (
        db.session.query(CommissionTransaction)
        .filter_by(order_id=order_id, user_id=user_id, commission_type=commission_type)
        .first()
    )
    if existing is not None:
        current_app.logger.warning(
            "Commission already recorded for order %s user %s (%s); not creating another",
            order_id, user_id, commission_type,
        )
        return existing.amount_cents

    config = resolve_config(user_id, at_time)
    amount = _amount_for(config, order_total_cents)
    if amount <= 0:
        return 0

    tx = CommissionTransaction(
        user_id=user_id,
        order_id=order_id,
        commission_type=commission_type,
        amount_cents=amount,
        rate_type=config.commission_type,
        rate_value=config.commission_value,
        order_total_cents=order_total_cents,
        status=COMMISSION_PENDING,
    )
    db.session.add(tx)
    db.session.flush()
    return amount


def _order_transactions(order_id: int, statuses) -> list[CommissionTransaction]:
    return (
        lock_for_update(
            db.session.query(CommissionTransaction).filter(
                CommissionTransaction.order_id == order_id,
                CommissionTransaction.status.in_(list(statuses)),
            )
        )
        .order_by(CommissionTransaction.id.asc())
        .all()
    )


def approve_for_order(order_id: int, approver_id: int | None) -> list[CommissionTransaction]:
    """Move every pending commission on the order to approved."""
    now = utcnow()
    approved = []
    for tx in _order_transactions(order_id, (COMMISSION_PENDING,)):
        tx.status = COMMISSION_APPROVED
        tx.approved_by_user_id = approver_id
        tx.approved_at = now
        approved.append(tx)
    db.session.flush()

    for tx in approved:
        events.queue_event(
            events.COMMISSION_APPROVED,
            commission_id=tx.id,
            order_id=order_id,
            user_id=tx.user_id,
            amount_cents=tx.amount_cents,
        )
    return approved


def reject_for_order(order_id: int) -> list[CommissionTransaction]:
    """Reject pending and approved commissions on the order. Paid rows are left alone."""
    now = utcnow()
    rejected = []
    for tx in _order_transactions(order_id, (COMMISSION_PENDING, COMMISSION_APPROVED)):
        tx.status = COMMISSION_REJECTED
        tx.rejected_at = now
        rejected.append(tx)
    db.session.flush()

    if rejected:
        current_app.logger.info("Rejected %d commission(s) for order %s", len(rejected), order_id)
    return rejected


def _lock_commission(commission_id: int) -> CommissionTransaction:
    tx = lock_for_update(db.session.query(CommissionTransaction).filter_by(id=commission_id)).first()
    if tx is None:
        raise NotFound("Commission", commission_id)
    return tx


def approve_commission(commission_id: int, approver_id: int) -> CommissionTransaction:
    """Manual approval of a single pending commission."""
    def _op():
        begin_write()
        tx = _lock_commission(commission_id)
        _check_transition(tx, COMMISSION_APPROVED)
        tx.status = COMMISSION_APPROVED
        tx.approved_by_user_id = approver_id
        tx.approved_at = utcnow()
        db.session.flush()
        events.queue_event(
            events.COMMISSION_APPROVED,
            commission_id=tx.id,
            order_id=tx.order_id,
            user_id=tx.user_id,
            amount_cents=tx.amount_cents,
        )
        db.session.commit()
        return tx

    return run_with_retry(_op)


def mark_paid(commission_id: int, payer_id: int) -> CommissionTransaction:
    """approved -> paid. Anything else is an invalid transition."""
    def _op():
        begin_write()
        tx = _lock_commission(commission_id)
        _check_transition(tx, COMMISSION_PAID)
        tx.status = COMMISSION_PAID
        tx.paid_by_user_id = payer_id
        tx.paid_at = utcnow()
        db.session.flush()
        events.queue_event(
            events.COMMISSION_PAID,
            commission_id=tx.id,
            order_id=tx.order_id,
            user_id=tx.user_id,
            amount_cents=tx.amount_cents,
        )
        db.session.commit()
        return tx

    return run_with_retry(_op)


# ---------------------------------------------------------------------------
# Config management
# ---------------------------------------------------------------------------

def create_config(
    user_id: int,
    commission_type: str,
    commission_value: int,
    effective_from: datetime | None = None,
    effective_until: datetime | None = None,
) -> CommissionConfig:
    if commission_type not in RATE_TYPES:
        raise ValidationError(f"commission_type must be one of {list(RATE_TYPES)}")
    if isinstance(commission_value, bool) or not isinstance(commission_value, int):
        raise ValidationError("commission_value must be an integer")
    if commission_value < 0:
        raise ValidationError("commission_value must be >= 0")
    if commission_type == RATE_PERCENTAGE and commission_value > 10_000:
        raise ValidationError("percentage commission_value is basis points and must be <= 10000")

    effective_from = to_utc_naive(effective_from) if effective_from else utcnow()
    effective_until = to_utc_naive(effective_until) if effective_until else None
    if effective_until is not None and effective_until < effective_from:
        raise ValidationError("effective_until must be on or after effective_from")

    def _op():
        begin_write()
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound("User", user_id)

        # Two active ranges overlap unless one ends before the other starts
        overlap_filters = [
            CommissionConfig.user_id == user_id,
            CommissionConfig.is_active.is_(True),
            or_(CommissionConfig.effective_until.is_(None), CommissionConfig.effective_until >= effective_from),
        ]
        if effective_until is not None:
            overlap_filters.append(CommissionConfig.effective_from <= effective_until)
        overlapping = db.session.query(CommissionConfig.id).filter(and_(*overlap_filters)).all()
        if overlapping:
            raise ConflictError(
                "An active commission config already covers this period",
                {"user_id": user_id, "config_ids": [row.id for row in overlapping]},
            )

        config = CommissionConfig(
            user_id=user_id,
            commission_type=commission_type,
            commission_value=commission_value,
            effective_from=effective_from,
            effective_until=effective_until,
            is_active=True,
        )
        db.session.add(config)
        db.session.commit()
        current_app.logger.info(
            "Commission config %s created for user %s: %s %s",
            config.id, user_id, commission_type, commission_value,
        )
        return config

    return run_with_retry(_op)


def deactivate_config(config_id: int) -> CommissionConfig:
    def _op():
        config = db.session.get(CommissionConfig, config_id)
        if config is None:
            raise NotFound("CommissionConfig", config_id)
        config.is_active = False
        db.session.commit()
        return config

    return run_with_retry(_op)


def list_configs(user_id: int | None = None, active_only: bool = False) -> list[CommissionConfig]:
    query = db.session.query(CommissionConfig)
    if user_id is not None:
        query = query.filter(CommissionConfig.user_id == user_id)
    if active_only:
        query = query.filter(CommissionConfig.is_active.is_(True))
    return query.order_by(CommissionConfig.user_id.asc(), CommissionConfig.effective_from.desc()).all()


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def get_summary(user_id: int | None = None) -> dict:
    """Count and total amount per status, optionally for one earner."""
    query = db.session.query(
        CommissionTransaction.status,
        func.count(CommissionTransaction.id),
        func.coalesce(func.sum(CommissionTransaction.amount_cents), 0),
    )
    if user_id is not None:
        query = query.filter(CommissionTransaction.user_id == user_id)
    rows = query.group_by(CommissionTransaction.status).all()

    summary = {status: {"count": 0, "amount_cents": 0} for status in COMMISSION_STATUSES}
    for status, count, amount in rows:
        summary[status] = {"count": int(count), "amount_cents": int(amount)}
    summary["total"] = {
        "count": sum(v["count"] for v in summary.values()),
        "amount_cents": sum(v["amount_cents"] for v in summary.values()),
    }
    return summary


def _month_start(value: datetime, months_back: int = 0) -> datetime:
    month_index = value.year * 12 + (value.month - 1) - months_back
    return datetime(month_index // 12, month_index % 12 + 1, 1)


def get_monthly_earnings(user_id: int | None = None, months: int = 6) -> list[dict]:
    """
    Commission totals per calendar month, newest first.

    Covers the current month and the months - 1 before it. Rejected
    commissions are not earnings and are left out.
    """
    if isinstance(months, bool) or not isinstance(months, int) or not 1 <= months <= 36:
        raise ValidationError("months must be an integer between 1 and 36")

    since = _month_start(utcnow(), months - 1)
    period = func.strftime("%Y-%m", CommissionTransaction.created_at)
    query = db.session.query(
        period.label("month"),
        func.count(CommissionTransaction.id).label("commission_count"),
        func.coalesce(func.sum(CommissionTransaction.amount_cents), 0).label("amount_cents"),
    ).filter(
        CommissionTransaction.created_at >= since,
        CommissionTransaction.status != COMMISSION_REJECTED,
    )
    if user_id is not None:
        query = query.filter(CommissionTransaction.user_id == user_id)

    rows = query.group_by("month").order_by(period.desc()).all()
    return [
        {"month": row.month, "count": int(row.commission_count), "amount_cents": int(row.amount_cents)}
        for row in rows
    ]


LEADERBOARD_PERIODS = ("month", "year", "all")


def get_leaderboard(period: str = "month", limit: int = 20) -> list[dict]:
    """
    Active staff and affiliates ranked by commission earned in the period.

    Earners with nothing in the period still appear with zero totals.
    """
    if period not in LEADERBOARD_PERIODS:
        raise ValidationError(f"period must be one of {list(LEADERBOARD_PERIODS)}")

    now = utcnow()
    join_on = and_(
        CommissionTransaction.user_id == User.id,
        CommissionTransaction.status != COMMISSION_REJECTED,
    )
    if period == "month":
        join_on = and_(join_on, CommissionTransaction.created_at >= _month_start(now))
    elif period == "year":
        join_on = and_(join_on, CommissionTransaction.created_at >= datetime(now.year, 1, 1))

    total = func.coalesce(func.sum(CommissionTransaction.amount_cents), 0)
    rows = (
        db.session.query(
            User.id,
            User.full_name,
            User.email,
            User.role,
            func.count(CommissionTransaction.id).label("commission_count"),
            total.label("total_cents"),
        )
        .outerjoin(CommissionTransaction, join_on)
        .filter(User.role.in_((ROLE_STAFF, ROLE_AFFILIATE)), User.is_active.is_(True))
        .group_by(User.id, User.full_name, User.email, User.role)
        .order_by(total.desc(), User.id.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "rank": index,
            "user_id": row.id,
            "full_name": row.full_name,
            "email": row.email,
            "role": row.role,
            "commission_count": int(row.commission_count),
            "total_commission_cents": int(row.total_cents),
        }
        for index, row in enumerate(rows, start=1)
    ]


def list_transactions(actor, filters: dict | None = None, limit: int = 100) -> list[CommissionTransaction]:
    filters = filters or {}
    query = commission_scope(db.session.query(CommissionTransaction), actor, CommissionTransaction)

    status = filters.get("status")
    if status:
        if status not in COMMISSION_STATUSES:
            raise ValidationError(f"Invalid commission status: {status}")
        query = query.filter(CommissionTransaction.status == status)

    commission_type = filters.get("commission_type")
    if commission_type:
        if commission_type not in (COMMISSION_STAFF, COMMISSION_AFFILIATE):
            raise ValidationError(f"Invalid commission type: {commission_type}")
        query = query.filter(CommissionTransaction.commission_type == commission_type)

    if filters.get("user_id") is not None:
        query = query.filter(CommissionTransaction.user_id == filters["user_id"])
    if filters.get("order_id") is not None:
        query = query.filter(CommissionTransaction.order_id == filters["order_id"])

    return query.order_by(CommissionTransaction.created_at.desc(), CommissionTransaction.id.desc()).limit(limit).all()


def order_commission_totals(order_id: int) -> dict:
    """Sum of commission amounts per commission_type for one order."""
    rows = (
        db.session.query(CommissionTransaction.commission_type, func.coalesce(func.sum(CommissionTransaction.amount_cents), 0))
        .filter(CommissionTransaction.order_id == order_id)
        .group_by(CommissionTransaction.commission_type)
        .all()
    )
    totals = {COMMISSION_STAFF: 0, COMMISSION_AFFILIATE: 0}
    for commission_type, amount in rows:
        totals[commission_type] = int(amount)
    return totals

