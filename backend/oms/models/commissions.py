from __future__ import annotations

from ..extensions import db
from oms.time_utils import to_utc_z


RATE_PERCENTAGE = "percentage"
RATE_FIXED = "fixed"
RATE_TYPES = (RATE_PERCENTAGE, RATE_FIXED)

COMMISSION_STAFF = "staff"
COMMISSION_AFFILIATE = "affiliate"
COMMISSION_TYPES = (COMMISSION_STAFF, COMMISSION_AFFILIATE)

COMMISSION_PENDING = "pending"
COMMISSION_APPROVED = "approved"
COMMISSION_PAID = "paid"
COMMISSION_REJECTED = "rejected"
COMMISSION_STATUSES = (COMMISSION_PENDING, COMMISSION_APPROVED, COMMISSION_PAID, COMMISSION_REJECTED)


class CommissionConfig(db.Model):
    """
    Rule for how much an earner makes per order.

    commission_value is basis points for percentage configs (500 = 5%) and
    cents for fixed configs. At most one active config may cover a given
    instant for a given earner.
    """
    __tablename__ = "commission_configs"
    __table_args__ = (
        db.CheckConstraint("commission_value >= 0", name="ck_commission_configs_value_non_negative"),
        db.Index("ix_commission_configs_user_active", "user_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    commission_type = db.Column(db.String(16), nullable=False)
    commission_value = db.Column(db.Integer, nullable=False)

    effective_from = db.Column(db.DateTime(timezone=True), nullable=False)
    effective_until = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("commission_configs", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "commission_type": self.commission_type,
            "commission_value": self.commission_value,
            "effective_from": to_utc_z(self.effective_from),
            "effective_until": to_utc_z(self.effective_until),
            "is_active": self.is_active,
        }


class CommissionTransaction(db.Model):
    """
    One earned commission, one per (order, earner, commission_type).

    amount_cents, rate_type, rate_value and order_total_cents are frozen at
    creation; later config changes never touch existing rows.
    """
    __tablename__ = "commission_transactions"
    __table_args__ = (
        db.UniqueConstraint("order_id", "user_id", "commission_type", name="uq_commission_tx_order_earner"),
        db.CheckConstraint("amount_cents > 0", name="ck_commission_tx_amount_positive"),
        db.Index("ix_commission_tx_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    commission_type = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    rate_type = db.Column(db.String(16), nullable=False)
    rate_value = db.Column(db.Integer, nullable=False)
    order_total_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=COMMISSION_PENDING, index=True)

    approved_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    order = db.relationship("Order", backref=db.backref("commission_transactions", lazy=True))
    earner = db.relationship("User", foreign_keys=[user_id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "commission_type": self.commission_type,
            "amount_cents": self.amount_cents,
            "rate_type": self.rate_type,
            "rate_value": self.rate_value,
            "order_total_cents": self.order_total_cents,
            "status": self.status,
            "approved_by_user_id": self.approved_by_user_id,
            "approved_at": to_utc_z(self.approved_at),
            "paid_by_user_id": self.paid_by_user_id,
            "paid_at": to_utc_z(self.paid_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "created_at": to_utc_z(self.created_at),
        }
