"""
Bearer token sessions.

Authentication itself belongs to an outside collaborator; this module only
maps a presented token to the user (and so the Actor) behind it. Tokens
are 32 random bytes, stored as a SHA-256 hash, expire after
SESSION_TTL_HOURS, and can be revoked.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import timedelta

from flask import current_app

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import SessionToken, User
from oms.time_utils import utcnow


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    # Tokens are high-entropy, a plain digest is enough
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(user_id: int, ttl_hours: int | None = None) -> tuple[SessionToken, str]:
    """
    Issue a token for a user.

    Returns (session_record, plaintext_token). Only the hash is stored.
    """
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)
    if not user.is_active:
        raise ValidationError("User account is inactive")

    if ttl_hours is None:
        ttl_hours = current_app.config.get("SESSION_TTL_HOURS", 24)

    plaintext_token = generate_token()
    now = utcnow()
    session = SessionToken(
        user_id=user.id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    db.session.add(session)
    db.session.commit()
    return session, plaintext_token


def validate_session(token: str) -> User | None:
    """
    Resolve a token to its active user.

    Returns None for unknown, expired or revoked tokens, and for users that
    have been deactivated since the token was issued.
    """
    if not token:
        return None

    session = (
        db.session.query(SessionToken)
        .filter(SessionToken.token_hash == hash_token(token), SessionToken.revoked_at.is_(None))
        .first()
    )
    if session is None:
        return None
    if session.expires_at < utcnow():
        return None

    user = session.user
    if user is None or not user.is_active:
        return None
    return user


def revoke_session(token: str) -> bool:
    session = (
        db.session.query(SessionToken)
        .filter(SessionToken.token_hash == hash_token(token), SessionToken.revoked_at.is_(None))
        .first()
    )
    if session is None:
        return False
    session.revoked_at = utcnow()
    db.session.commit()
    return True
