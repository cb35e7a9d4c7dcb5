from __future__ import annotations

from ..extensions import db
from oms.time_utils import to_utc_z


CHANNEL_WEBSITE = "website"
CHANNEL_TYPES = ("website", "shopee", "lazada", "tiktok", "facebook", "whatsapp", "other")


class SalesChannel(db.Model):
    """A selling surface: the internal website or an external marketplace. One row per type."""
    __tablename__ = "sales_channels"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    type = db.Column(db.String(16), nullable=False, unique=True, index=True)

    api_endpoint = db.Column(db.String(255), nullable=True)
    api_key = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        # api_key is a credential and stays server-side
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "api_endpoint": self.api_endpoint,
            "is_active": self.is_active,
            "last_sync_at": to_utc_z(self.last_sync_at),
        }


class ApiLog(db.Model):
    """
    Audit row for every inbound webhook call.

    Written in its own transaction before the order work starts, then
    completed with the outcome, so the record survives a rollback.
    """
    __tablename__ = "api_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    channel_id = db.Column(db.Integer, db.ForeignKey("sales_channels.id"), nullable=True, index=True)
    endpoint = db.Column(db.String(255), nullable=False)
    method = db.Column(db.String(10), nullable=False)
    request_payload = db.Column(db.Text, nullable=True)
    response_payload = db.Column(db.Text, nullable=True)
    success = db.Column(db.Boolean, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "endpoint": self.endpoint,
            "method": self.method,
            "request_payload": self.request_payload,
            "response_payload": self.response_payload,
            "success": self.success,
            "error_message": self.error_message,
            "created_at": to_utc_z(self.created_at),
        }
