# Overview: Locking and retry helpers shared by every write path.

from __future__ import annotations

import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for a read-modify-write and refresh the locked rows.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() serializes
    writers there instead.
    """
    return query.with_for_update().populate_existing()


def begin_write() -> None:
    """
    Open the unit of work as a writer.

    On SQLite this takes the database write lock up front (BEGIN IMMEDIATE)
    so two read-modify-write units cannot interleave. Other dialects rely on
    the row locks taken by lock_for_update().
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.driver_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute one unit of work, rolling back on any failure.

    Lock contention (OperationalError) and optimistic version conflicts
    (StaleDataError) are retried with exponential backoff; every other
    exception is re-raised after the rollback.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
