"""
Role gates for the order workflow.

The caller is an opaque Actor (id, role). Predicates here are evaluated
once per operation, against the row the operation has already loaded, so
the decision and the write see the same data.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models.auth import ROLE_ADMIN, ROLE_STAFF, ROLE_AFFILIATE, ROLES


@dataclass(frozen=True)
class Actor:
    id: int
    role: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role}")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role == ROLE_STAFF

    @property
    def is_affiliate(self) -> bool:
        return self.role == ROLE_AFFILIATE

    @classmethod
    def from_user(cls, user) -> "Actor":
        return cls(id=user.id, role=user.role)


def can_view_order(actor: Actor, order) -> bool:
    if actor.is_admin:
        return True
    if actor.is_staff:
        return order.assigned_staff_id == actor.id
    if actor.is_affiliate:
        return order.affiliate_id == actor.id
    return False


def can_transition(actor: Actor, order) -> bool:
    """Fulfillment transitions: admin anywhere, staff on assigned orders."""
    if actor.is_admin:
        return True
    if actor.is_staff:
        return order.assigned_staff_id == actor.id
    return False


def can_update_payment(actor: Actor, order=None) -> bool:
    return actor.role in (ROLE_ADMIN, ROLE_STAFF)


def can_create_order(actor: Actor) -> bool:
    return actor.role in (ROLE_ADMIN, ROLE_STAFF)


def can_manage_commissions(actor: Actor) -> bool:
    return actor.is_admin


def order_scope(query, actor: Actor, order_model):
    """Restrict an Order query to the rows the actor may see."""
    if actor.is_admin:
        return query
    if actor.is_staff:
        return query.filter(order_model.assigned_staff_id == actor.id)
    if actor.is_affiliate:
        return query.filter(order_model.affiliate_id == actor.id)
    return query.filter(False)


def commission_scope(query, actor: Actor, commission_model):
    """Admins see every commission; everyone else only their own."""
    if actor.is_admin:
        return query
    return query.filter(commission_model.user_id == actor.id)
