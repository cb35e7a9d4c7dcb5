from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from oms.time_utils import to_utc_z


TX_SALE = "sale"
TX_PURCHASE = "purchase"
TX_ADJUSTMENT = "adjustment"
TX_RETURN = "return"

INVENTORY_TX_TYPES = (TX_SALE, TX_PURCHASE, TX_ADJUSTMENT, TX_RETURN)

REFERENCE_ORDER = "order"
REFERENCE_MANUAL = "manual"


class InventoryTransaction(db.Model):
    """
    Append-only audit record of one stock mutation.

    IMMUTABLE: rows are never updated or deleted. The sum of quantity_delta
    per product must equal Product.stock_quantity.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.CheckConstraint("quantity_delta <> 0", name="ck_inventory_tx_nonzero_delta"),
        db.Index("ix_inventory_tx_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(16), nullable=False, default=REFERENCE_MANUAL)
    reference_id = db.Column(db.Integer, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("inventory_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "type": self.type,
            "quantity_delta": self.quantity_delta,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "created_by_user_id": self.created_by_user_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(InventoryTransaction, "before_update")
@event.listens_for(InventoryTransaction, "before_delete")
def _refuse_ledger_mutation(mapper, connection, target):
    raise RuntimeError("inventory transactions are append-only")
