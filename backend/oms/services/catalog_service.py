# backend/oms/services/catalog_service.py
"""
Minimal catalog writes: categories and products.

Products get their SKU from the category's sequence at creation and keep
it for life. A product that any order line references is archived instead
of deleted.
"""
from __future__ import annotations

import re

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFound, ValidationError
from ..extensions import db
from ..models import Category, Product, OrderLineItem, InventoryTransaction
from ..models.catalog import PRODUCT_STATUS_ACTIVE, PRODUCT_STATUS_INACTIVE, PRODUCT_STATUSES
from ..models.inventory import TX_PURCHASE, REFERENCE_MANUAL
from .concurrency import begin_write, run_with_retry
from .sequence_service import next_sku

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-")


def create_category(name: str, slug: str | None = None) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    slug = slugify(slug or name)
    if len(slug.replace("-", "")) < 2:
        raise ValidationError("slug must contain at least two letters or digits")

    category = Category(name=name, slug=slug, is_active=True)
    db.session.add(category)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Category slug already exists: {slug}")
    return category


def create_product(
    *,
    category_id: int,
    name: str,
    price_cents: int,
    cost_cents: int = 0,
    stock_quantity: int = 0,
    low_stock_threshold: int = 10,
    description: str | None = None,
    actor_id: int | None = None,
) -> Product:
    """
    Create a product with a freshly allocated SKU.

    Opening stock is booked as a purchase transaction so the ledger and
    the stock projection agree from the first row.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    for field, value in (
        ("price_cents", price_cents),
        ("cost_cents", cost_cents),
        ("stock_quantity", stock_quantity),
        ("low_stock_threshold", low_stock_threshold),
    ):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{field} must be an integer")
        if value < 0:
            raise ValidationError(f"{field} must be >= 0")

    def _op():
        begin_write()
        category = db.session.get(Category, category_id)
        if category is None:
            raise NotFound("Category", category_id)

        product = Product(
            category_id=category.id,
            sku=next_sku(category.sku_prefix),
            name=name,
            description=description,
            price_cents=price_cents,
            cost_cents=cost_cents,
            stock_quantity=stock_quantity,
            low_stock_threshold=low_stock_threshold,
            status=PRODUCT_STATUS_ACTIVE,
        )
        db.session.add(product)
        db.session.flush()

        if stock_quantity > 0:
            db.session.add(InventoryTransaction(
                product_id=product.id,
                type=TX_PURCHASE,
                quantity_delta=stock_quantity,
                reference_type=REFERENCE_MANUAL,
                created_by_user_id=actor_id,
                note="Opening stock",
            ))
        db.session.commit()
        return product

    return run_with_retry(_op)


def set_product_status(product_id: int, status: str) -> Product:
    if status not in PRODUCT_STATUSES:
        raise ValidationError(f"Invalid product status: {status}")
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)
    product.status = status
    db.session.commit()
    return product


def delete_product(product_id: int) -> dict:
    """
    Delete a product, or archive it when history references it.

    Returns {"deleted": bool, "archived": bool}.
    """
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)

    referenced = (
        db.session.query(OrderLineItem.id).filter_by(product_id=product_id).first() is not None
        or db.session.query(InventoryTransaction.id).filter_by(product_id=product_id).first() is not None
    )
    if referenced:
        product.status = PRODUCT_STATUS_INACTIVE
        db.session.commit()
        current_app.logger.info("Product %s (%s) archived instead of deleted", product.id, product.sku)
        return {"deleted": False, "archived": True}

    db.session.delete(product)
    db.session.commit()
    return {"deleted": True, "archived": False}


def get_product_by_sku(sku: str) -> Product | None:
    if not sku:
        return None
    return db.session.query(Product).filter_by(sku=sku.strip().upper()).first()
