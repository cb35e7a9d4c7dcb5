"""
Post-commit event dispatch to the notification sink.

Services queue events on the current session while they work. Queued
events are published only after that session commits and are dropped when
it rolls back, so a notification can never describe work that did not
happen. Sink failures are logged and never propagate.

Sinks are plain callables taking an Event. They run after the commit and
must not use db.session.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app, has_app_context
from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

from ..extensions import db
from oms.time_utils import utcnow, to_utc_z


ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
ORDER_PAYMENT_STATUS_CHANGED = "order.payment_status_changed"
LOW_STOCK = "inventory.low_stock"
COMMISSION_APPROVED = "commission.approved"
COMMISSION_PAID = "commission.paid"

_PENDING_KEY = "oms.pending_events"


@dataclass(frozen=True)
class Event:
    type: str
    payload: dict
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {"type": self.type, "payload": self.payload, "occurred_at": to_utc_z(self.occurred_at)}


def queue_event(event_type: str, **payload) -> Event:
    ev = Event(type=event_type, payload=payload)
    db.session.info.setdefault(_PENDING_KEY, []).append(ev)
    return ev


def pending_events() -> list[Event]:
    return list(db.session.info.get(_PENDING_KEY, []))


def log_sink(ev: Event) -> None:
    current_app.logger.info("event %s %s", ev.type, json.dumps(ev.payload, sort_keys=True, default=str))


def init_app(app) -> None:
    state = app.extensions.setdefault("oms", {})
    state.setdefault("event_sinks", [log_sink])


def register_sink(app, sink) -> None:
    app.extensions.setdefault("oms", {}).setdefault("event_sinks", []).append(sink)


def publish(events: list[Event]) -> None:
    if not events or not has_app_context():
        return
    sinks = current_app.extensions.get("oms", {}).get("event_sinks", [])
    for ev in events:
        for sink in sinks:
            try:
                sink(ev)
            except Exception:
                current_app.logger.exception("Event sink failed for %s", ev.type)


@sa_event.listens_for(Session, "after_commit")
def _publish_after_commit(session):
    publish(session.info.pop(_PENDING_KEY, None) or [])


@sa_event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(session, previous_transaction):
    # Rolling back a savepoint keeps the enclosing unit of work and its events
    if previous_transaction.nested:
        return
    session.info.pop(_PENDING_KEY, None)
