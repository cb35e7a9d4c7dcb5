# Overview: Identity records that actions and commissions are attributed to.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, ValidationError
from ..extensions import db
from ..models import User
from ..models.auth import ROLES


def create_user(username: str, email: str, full_name: str | None = None, role: str = "staff") -> User:
    username = (username or "").strip()
    email = (email or "").strip().lower()
    if not username:
        raise ValidationError("username is required")
    if not email or "@" not in email:
        raise ValidationError("email is invalid")
    if role not in ROLES:
        raise ValidationError(f"role must be one of {list(ROLES)}")

    user = User(
        username=username,
        email=email,
        full_name=(full_name or username).strip(),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"User {username} or email {email} already exists")
    return user


def get_user_by_username(username: str) -> User | None:
    return db.session.query(User).filter_by(username=username).first()


def set_user_active(user: User, is_active: bool) -> User:
    user.is_active = is_active
    db.session.commit()
    return user
