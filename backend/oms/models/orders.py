from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from oms.time_utils import to_utc_z


# Fulfillment status
ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PROCESSING = "processing"
ORDER_PACKED = "packed"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_PROCESSING,
    ORDER_PACKED,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
)

# Payment status
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_REFUNDED)

PAYMENT_METHOD_COD = "cod"
PAYMENT_METHODS = (PAYMENT_METHOD_COD, "online_banking", "credit_card", "ewallet")


class Order(db.Model):
    """
    One purchase transaction.

    Monetary breakdown is written once at creation and the defining formula
    is enforced by a CHECK constraint. staff_commission_cents and
    affiliate_commission_cents mirror the sum of the order's
    CommissionTransaction amounts per commission_type and are written in the
    same unit of work as those rows.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("channel_id", "external_order_id", name="uq_orders_channel_external_id"),
        db.CheckConstraint(
            "total_cents = subtotal_cents - discount_cents + shipping_fee_cents + tax_cents",
            name="ck_orders_total_formula",
        ),
        db.CheckConstraint("discount_cents >= 0", name="ck_orders_discount_non_negative"),
        db.CheckConstraint("shipping_fee_cents >= 0", name="ck_orders_shipping_non_negative"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(50), nullable=False, unique=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("sales_channels.id"), nullable=False, index=True)
    assigned_staff_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    affiliate_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    # Marketplace-side identifier for injected orders
    external_order_id = db.Column(db.String(100), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    staff_commission_cents = db.Column(db.Integer, nullable=False, default=0)
    affiliate_commission_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)
    payment_method = db.Column(db.String(32), nullable=False, default=PAYMENT_METHOD_COD)

    shipping_address = db.Column(db.Text, nullable=False, default="")
    shipping_city = db.Column(db.String(50), nullable=True)
    shipping_state = db.Column(db.String(50), nullable=True)
    shipping_postal_code = db.Column(db.String(20), nullable=True)
    tracking_number = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    packed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    channel = db.relationship("SalesChannel", backref=db.backref("orders", lazy=True))
    assigned_staff = db.relationship("User", foreign_keys=[assigned_staff_id])
    affiliate = db.relationship("User", foreign_keys=[affiliate_id])
    items = db.relationship(
        "OrderLineItem",
        back_populates="order",
        lazy=True,
        order_by="OrderLineItem.id",
        passive_deletes="all",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "channel_id": self.channel_id,
            "assigned_staff_id": self.assigned_staff_id,
            "affiliate_id": self.affiliate_id,
            "external_order_id": self.external_order_id,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "shipping_fee_cents": self.shipping_fee_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "staff_commission_cents": self.staff_commission_cents,
            "affiliate_commission_cents": self.affiliate_commission_cents,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "shipping_address": self.shipping_address,
            "shipping_city": self.shipping_city,
            "shipping_state": self.shipping_state,
            "shipping_postal_code": self.shipping_postal_code,
            "tracking_number": self.tracking_number,
            "notes": self.notes,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "packed_at": to_utc_z(self.packed_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderLineItem(db.Model):
    """Snapshot of a product at the time of sale. Immutable once written."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        db.CheckConstraint("subtotal_cents = quantity * unit_price_cents", name="ck_order_items_subtotal"),
        db.CheckConstraint(
            "profit_cents = (unit_price_cents - unit_cost_cents) * quantity",
            name="ck_order_items_profit",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)

    product_name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(50), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    profit_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    @classmethod
    def snapshot(cls, product, quantity: int, unit_price_cents: int | None = None) -> "OrderLineItem":
        price = product.price_cents if unit_price_cents is None else unit_price_cents
        cost = product.cost_cents or 0
        return cls(
            product_id=product.id,
            product_name=product.name,
            sku=product.sku,
            unit_price_cents=price,
            unit_cost_cents=cost,
            quantity=quantity,
            subtotal_cents=price * quantity,
            profit_cents=(price - cost) * quantity,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "unit_price_cents": self.unit_price_cents,
            "unit_cost_cents": self.unit_cost_cents,
            "quantity": self.quantity,
            "subtotal_cents": self.subtotal_cents,
            "profit_cents": self.profit_cents,
        }


@event.listens_for(OrderLineItem, "before_update")
@event.listens_for(OrderLineItem, "before_delete")
def _refuse_line_item_mutation(mapper, connection, target):
    raise RuntimeError("order line items are immutable snapshots")


@event.listens_for(Order, "before_delete")
def _refuse_order_delete(mapper, connection, target):
    raise RuntimeError("orders are never physically deleted")
