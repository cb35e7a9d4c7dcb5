"""
Inventory invariants (authoritative)

- Product.stock_quantity is a projection of the InventoryTransaction ledger:
  for every product, stock_quantity == SUM(quantity_delta).
- stock_quantity never goes below zero (service check + DB CHECK).
- Every read-modify-write holds an exclusive lock on the single product row.
  Batch callers lock one product at a time, in the order they are given.
- deduct_stock / restore_stock run inside the caller's unit of work (flush,
  no commit). add_stock / adjust_stock are their own unit of work.
- A low-stock event is queued whenever a mutation leaves
  stock_quantity <= low_stock_threshold; it is published after commit.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from ..errors import InsufficientStock, NotFound, ValidationError
from ..extensions import db
from ..models import Product, InventoryTransaction
from ..models.catalog import PRODUCT_STATUS_ACTIVE
from ..models.inventory import (
    TX_SALE,
    TX_PURCHASE,
    TX_ADJUSTMENT,
    TX_RETURN,
    INVENTORY_TX_TYPES,
    REFERENCE_ORDER,
    REFERENCE_MANUAL,
)
from oms.time_utils import utcnow
from . import events
from .concurrency import begin_write, lock_for_update, run_with_retry


def _require_positive_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")
    return quantity


def _lock_product(product_id: int) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise NotFound("Product", product_id)
    return product


def _append_transaction(
    *,
    product: Product,
    tx_type: str,
    quantity_delta: int,
    reference_type: str,
    reference_id: int | None,
    actor_id: int | None,
    note: str | None,
) -> InventoryTransaction:
    tx = InventoryTransaction(
        product_id=product.id,
        type=tx_type,
        quantity_delta=quantity_delta,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_user_id=actor_id,
        note=note,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def check_low_stock(product: Product, actor_id: int | None = None) -> bool:
    """Queue a low-stock event if the product sits at or below its threshold."""
    if not product.is_low_stock:
        return False
    events.queue_event(
        events.LOW_STOCK,
        product_id=product.id,
        sku=product.sku,
        product_name=product.name,
        stock_quantity=product.stock_quantity,
        low_stock_threshold=product.low_stock_threshold,
        user_id=actor_id,
    )
    return True


def deduct_stock(
    product_id: int,
    quantity: int,
    tx_type: str = TX_SALE,
    reference_id: int | None = None,
    actor_id: int | None = None,
    note: str | None = None,
) -> Product:
    """
    Remove stock for a sale (or another outbound movement).

    Must be called inside the caller's unit of work; nothing is committed
    here. Raises InsufficientStock when the locked row holds fewer units
    than requested.
    """
    _require_positive_quantity(quantity)
    if tx_type not in INVENTORY_TX_TYPES:
        raise ValidationError(f"Invalid inventory transaction type: {tx_type}")

    product = _lock_product(product_id)
    if product.stock_quantity < quantity:
        raise InsufficientStock(product.name, product.stock_quantity, quantity)

    product.stock_quantity -= quantity
    _append_transaction(
        product=product,
        tx_type=tx_type,
        quantity_delta=-quantity,
        reference_type=REFERENCE_ORDER if reference_id is not None else REFERENCE_MANUAL,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
    )

    check_low_stock(product, actor_id)
    return product


def restore_stock(
    product_id: int,
    quantity: int,
    reference_id: int | None = None,
    actor_id: int | None = None,
    note: str | None = None,
) -> Product:
    """
    Put units back after a cancellation or refund.

    Runs inside the caller's unit of work. No upper bound is enforced.
    """
    _require_positive_quantity(quantity)
    product = _lock_product(product_id)

    product.stock_quantity += quantity
    _append_transaction(
        product=product,
        tx_type=TX_RETURN,
        quantity_delta=quantity,
        reference_type=REFERENCE_ORDER if reference_id is not None else REFERENCE_MANUAL,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note or "Stock restored from cancelled/refunded order",
    )
    return product


def add_stock(product_id: int, quantity: int, actor_id: int | None, note: str | None = None) -> Product:
    """Manual restock. Commits its own unit of work."""
    _require_positive_quantity(quantity)

    def _op():
        begin_write()
        product = _lock_product(product_id)
        product.stock_quantity += quantity
        _append_transaction(
            product=product,
            tx_type=TX_PURCHASE,
            quantity_delta=quantity,
            reference_type=REFERENCE_MANUAL,
            reference_id=None,
            actor_id=actor_id,
            note=note or "Manual stock addition",
        )
        db.session.commit()
        return product

    return run_with_retry(_op)


def adjust_stock(product_id: int, new_quantity: int, actor_id: int | None, note: str | None = None) -> Product:
    """
    Set stock to an absolute value (stock-take correction).

    The ledger records the difference. When the difference is zero nothing
    is written and no state changes.
    """
    if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
        raise ValidationError("new_quantity must be an integer")
    if new_quantity < 0:
        raise ValidationError("new_quantity must be >= 0")

    def _op():
        begin_write()
        product = _lock_product(product_id)
        difference = new_quantity - product.stock_quantity
        if difference == 0:
            db.session.rollback()
            return product

        product.stock_quantity = new_quantity
        _append_transaction(
            product=product,
            tx_type=TX_ADJUSTMENT,
            quantity_delta=difference,
            reference_type=REFERENCE_MANUAL,
            reference_id=None,
            actor_id=actor_id,
            note=note or "Manual stock adjustment",
        )
        check_low_stock(product, actor_id)
        db.session.commit()
        return product

    return run_with_retry(_op)


def get_low_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(
            Product.stock_quantity <= Product.low_stock_threshold,
            Product.status == PRODUCT_STATUS_ACTIVE,
        )
        .order_by(Product.stock_quantity.asc(), Product.id.asc())
        .all()
    )


def get_out_of_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.stock_quantity == 0, Product.status == PRODUCT_STATUS_ACTIVE)
        .order_by(Product.id.asc())
        .all()
    )


def list_product_transactions(product_id: int, limit: int = 50) -> list[InventoryTransaction]:
    if db.session.get(Product, product_id) is None:
        raise NotFound("Product", product_id)
    return (
        db.session.query(InventoryTransaction)
        .filter_by(product_id=product_id)
        .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
        .limit(limit)
        .all()
    )


def list_recent_transactions(days: int = 30, limit: int = 100) -> list[InventoryTransaction]:
    """Ledger rows across all products from the last `days` days, newest first."""
    if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= 366:
        raise ValidationError("days must be an integer between 1 and 366")
    since = utcnow() - timedelta(days=days)
    return (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.created_at >= since)
        .order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
        .limit(limit)
        .all()
    )


def calculate_inventory_value() -> dict:
    row = (
        db.session.query(
            func.coalesce(func.sum(Product.stock_quantity * Product.cost_cents), 0).label("cost_value"),
            func.coalesce(func.sum(Product.stock_quantity * Product.price_cents), 0).label("selling_value"),
            func.count(Product.id).label("total_products"),
            func.coalesce(func.sum(Product.stock_quantity), 0).label("total_units"),
        )
        .filter(Product.status == PRODUCT_STATUS_ACTIVE)
        .one()
    )
    cost_value = int(row.cost_value or 0)
    selling_value = int(row.selling_value or 0)
    return {
        "cost_value_cents": cost_value,
        "selling_value_cents": selling_value,
        "potential_profit_cents": selling_value - cost_value,
        "total_products": int(row.total_products or 0),
        "total_units": int(row.total_units or 0),
    }


def reconcile_stock(product_id: int) -> dict:
    """
    Compare the stock projection with the ledger for one product.

    Stock that existed before the first ledger row (seeded catalog data)
    shows up as a drift equal to that opening balance.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)

    ledger_total = int(
        db.session.query(func.coalesce(func.sum(InventoryTransaction.quantity_delta), 0))
        .filter(InventoryTransaction.product_id == product_id)
        .scalar()
        or 0
    )
    drift = product.stock_quantity - ledger_total
    if drift:
        current_app.logger.warning(
            "Stock drift for product %s (%s): projection=%s ledger=%s",
            product.id, product.sku, product.stock_quantity, ledger_total,
        )
    return {
        "product_id": product.id,
        "sku": product.sku,
        "stock_quantity": product.stock_quantity,
        "ledger_quantity": ledger_total,
        "drift": drift,
        "in_sync": drift == 0,
    }
