from __future__ import annotations

from ..extensions import db
from oms.time_utils import to_utc_z


ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_AFFILIATE = "affiliate"
ROLES = (ROLE_ADMIN, ROLE_STAFF, ROLE_AFFILIATE)


class User(db.Model):
    """
    Identity that actions and commissions are attributed to.

    Credentials live with the authentication collaborator; this table only
    holds what the order workflow needs: a stable id and a role.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), nullable=False, unique=True)
    email = db.Column(db.String(100), nullable=False, unique=True)
    full_name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(16), nullable=False, default=ROLE_STAFF, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class SessionToken(db.Model):
    """
    Bearer token issued to a user.

    Only the SHA-256 hash of the token is stored. Tokens expire and can be
    revoked.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("session_tokens", lazy=True))

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None
