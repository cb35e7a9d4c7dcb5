# Overview: Identifier allocation for SKUs and order numbers.

from __future__ import annotations

import secrets

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import SkuSequence
from oms.time_utils import utcnow


def next_sku(prefix: str, pad: int = 3) -> str:
    """
    Allocate the next SKU for a category prefix, e.g. ELEC-001.

    Runs inside the caller's unit of work. The counter row is bumped with a
    single UPDATE so concurrent allocations serialize on that row; numbers
    are never handed out twice or reused.
    """
    if not prefix:
        raise ValueError("prefix is required")
    prefix = prefix.upper()

    stmt = (
        update(SkuSequence)
        .where(SkuSequence.prefix == prefix)
        .values(next_number=SkuSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = db.session.query(SkuSequence.next_number).filter_by(prefix=prefix).scalar()
        number = current - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(SkuSequence(prefix=prefix, next_number=2))
            number = 1
        except IntegrityError:
            # Another writer created the counter first
            db.session.execute(stmt)
            current = db.session.query(SkuSequence.next_number).filter_by(prefix=prefix).scalar()
            number = current - 1

    return f"{prefix}-{number:0{pad}d}"


def generate_order_number() -> str:
    """
    Order number: PREFIX-YYYYMMDDHHMMSS-XXXXXX (six random hex digits).

    The unique constraint on orders.order_number is the final guard; a
    collision surfaces as IntegrityError and rolls the unit of work back.
    """
    prefix = current_app.config.get("ORDER_NUMBER_PREFIX", "ORD")
    stamp = utcnow().strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{stamp}-{secrets.token_hex(3).upper()}"
