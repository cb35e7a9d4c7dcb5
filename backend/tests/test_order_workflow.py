"""
Order workflow tests.

Verifies:
- Order creation is atomic: stock, ledger, commissions, totals, customer aggregates
- total = subtotal - discount + shipping_fee + tax on every order
- Fulfillment and payment state machines, including stock restoration
- Events leave only after commit and a failing sink never undoes the work
- Role scoping for viewing, transitioning and listing
"""

import pytest

from oms.authorization import Actor
from oms.errors import (
    AccessDenied,
    InsufficientStock,
    InvalidStatusTransition,
    NotFound,
    ProductUnavailable,
    ValidationError,
)
from oms.models import CommissionTransaction, Customer, InventoryTransaction, Order, OrderLineItem, Product
from oms.models.catalog import PRODUCT_STATUS_INACTIVE
from oms.models.commissions import (
    COMMISSION_AFFILIATE,
    COMMISSION_STAFF,
    COMMISSION_APPROVED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    COMMISSION_REJECTED,
)
from oms.services import catalog_service, commission_service, events, order_service


def _create(actor, customer, channel, items, **kwargs):
    kwargs.setdefault("shipping", {"address": "1 Main St", "city": "Springfield"})
    kwargs.setdefault("payment_method", "cod")
    return order_service.create_order(
        cart_items=items,
        customer_id=customer.id,
        channel_id=channel.id,
        actor=actor,
        **kwargs,
    )


def _walk(order_id, statuses, actor):
    for status in statuses:
        order_service.update_status(order_id, status, actor)


# =============================================================================
# CREATION
# =============================================================================


class TestCreateOrder:

    def test_staff_order_end_to_end(
        self, db_session, staff_actor, staff_commission, customer, channel, product, published
    ):
        order = _create(
            staff_actor, customer, channel,
            [{"product_id": product.id, "quantity": 2}],
            shipping_fee_cents=1000,
        )

        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.subtotal_cents == 20000
        assert order.tax_cents == 1200
        assert order.shipping_fee_cents == 1000
        assert order.total_cents == 22200
        assert order.assigned_staff_id == staff_actor.id
        assert order.staff_commission_cents == 1110

        assert db_session.get(Product, product.id).stock_quantity == 3

        line = order.items[0]
        assert line.product_name == "Widget"
        assert line.sku == product.sku
        assert line.unit_price_cents == 10000
        assert line.subtotal_cents == 20000
        assert line.profit_cents == (10000 - 6000) * 2

        sale = (
            db_session.query(InventoryTransaction)
            .filter_by(product_id=product.id, type="sale")
            .one()
        )
        assert sale.quantity_delta == -2
        assert sale.reference_id == order.id

        tx = db_session.query(CommissionTransaction).filter_by(order_id=order.id).one()
        assert tx.amount_cents == 1110
        assert tx.status == COMMISSION_PENDING

        refreshed = db_session.get(Customer, customer.id)
        assert refreshed.total_orders == 1
        assert refreshed.total_spent_cents == 22200

        assert [e.type for e in published] == [events.ORDER_CREATED]
        assert published[0].payload["order_id"] == order.id

    def test_discount_and_total_formula(self, db_session, admin_actor, customer, channel, make_product):
        a = make_product(name="A", price_cents=1999, stock_quantity=10)
        b = make_product(name="B", price_cents=501, stock_quantity=10)

        order = _create(
            admin_actor, customer, channel,
            [{"product_id": a.id, "quantity": 3}, {"product_id": b.id, "quantity": 1}],
            discount_cents=500,
            shipping_fee_cents=250,
        )

        assert order.subtotal_cents == 3 * 1999 + 501
        assert order.tax_cents == (order.subtotal_cents * 600 + 5000) // 10000
        assert order.total_cents == (
            order.subtotal_cents - order.discount_cents + order.shipping_fee_cents + order.tax_cents
        )

    def test_admin_order_is_unassigned_and_earns_nothing(
        self, db_session, admin_actor, customer, channel, product
    ):
        order = _create(admin_actor, customer, channel, [{"product_id": product.id, "quantity": 1}])

        assert order.assigned_staff_id is None
        assert order.staff_commission_cents == 0

    def test_commission_columns_match_rows(
        self, db_session, staff_actor, affiliate_actor, staff_commission, affiliate_commission,
        customer, channel, product,
    ):
        order = _create(
            staff_actor, customer, channel,
            [{"product_id": product.id, "quantity": 1}],
            affiliate_id=affiliate_actor.id,
        )

        totals = commission_service.order_commission_totals(order.id)
        assert order.staff_commission_cents == totals[COMMISSION_STAFF] == 530
        assert order.affiliate_commission_cents == totals[COMMISSION_AFFILIATE] == 1060

    def test_duplicate_cart_lines_are_merged(self, db_session, admin_actor, customer, channel, product):
        order = _create(
            admin_actor, customer, channel,
            [{"product_id": product.id, "quantity": 1}, {"product_id": product.id, "quantity": 2}],
        )

        assert len(order.items) == 1
        assert order.items[0].quantity == 3
        assert db_session.get(Product, product.id).stock_quantity == 2

    def test_inactive_product_unavailable(self, db_session, admin_actor, customer, channel, product):
        catalog_service.set_product_status(product.id, PRODUCT_STATUS_INACTIVE)

        with pytest.raises(ProductUnavailable):
            _create(admin_actor, customer, channel, [{"product_id": product.id, "quantity": 1}])

    def test_affiliate_cannot_create(self, db_session, affiliate_actor, customer, channel, product):
        with pytest.raises(AccessDenied):
            _create(affiliate_actor, customer, channel, [{"product_id": product.id, "quantity": 1}])

    def test_affiliate_id_must_be_affiliate(self, db_session, admin_actor, staff_user, customer, channel, product):
        with pytest.raises(ValidationError):
            _create(
                admin_actor, customer, channel,
                [{"product_id": product.id, "quantity": 1}],
                affiliate_id=staff_user.id,
            )

    @pytest.mark.parametrize("items", [
        [],
        [{"product_id": 1, "quantity": 0}],
        [{"product_id": 1, "quantity": -2}],
    ])
    def test_invalid_cart(self, db_session, admin_actor, customer, channel, items):
        with pytest.raises(ValidationError):
            _create(admin_actor, customer, channel, items)

    def test_discount_above_subtotal(self, db_session, admin_actor, customer, channel, product):
        with pytest.raises(ValidationError):
            _create(
                admin_actor, customer, channel,
                [{"product_id": product.id, "quantity": 1}],
                discount_cents=10001,
            )

    def test_unknown_customer(self, db_session, admin_actor, channel, product):
        with pytest.raises(NotFound):
            order_service.create_order(
                cart_items=[{"product_id": product.id, "quantity": 1}],
                customer_id=999999,
                channel_id=channel.id,
                shipping=None,
                payment_method="cod",
                actor=admin_actor,
            )


class TestCreateOrderRollback:

    def test_failure_on_second_line_leaves_nothing(
        self, db_session, staff_actor, staff_commission, customer, channel, make_product, published
    ):
        plenty = make_product(name="Plenty", stock_quantity=10)
        scarce = make_product(name="Scarce", stock_quantity=1)
        published.clear()

        with pytest.raises(InsufficientStock) as exc_info:
            _create(
                staff_actor, customer, channel,
                [{"product_id": plenty.id, "quantity": 2}, {"product_id": scarce.id, "quantity": 3}],
            )

        assert exc_info.value.product_name == "Scarce"
        assert db_session.get(Product, plenty.id).stock_quantity == 10
        assert db_session.get(Product, scarce.id).stock_quantity == 1
        assert db_session.query(Order).count() == 0
        assert db_session.query(OrderLineItem).count() == 0
        assert db_session.query(CommissionTransaction).count() == 0
        assert db_session.query(InventoryTransaction).filter_by(type="sale").count() == 0
        assert db_session.get(Customer, customer.id).total_orders == 0
        assert published == []


# =============================================================================
# FULFILLMENT STATE MACHINE
# =============================================================================


class TestUpdateStatus:

    @pytest.fixture
    def order(self, db_session, staff_actor, staff_commission, customer, channel, product):
        return _create(staff_actor, customer, channel, [{"product_id": product.id, "quantity": 2}])

    def test_happy_path_stamps_timestamps(self, db_session, staff_actor, order):
        _walk(order.id, ["confirmed", "processing", "packed"], staff_actor)
        shipped = order_service.update_status(
            order.id, "shipped", staff_actor, {"tracking_number": "TRK-1"}
        )
        delivered = order_service.update_status(order.id, "delivered", staff_actor)

        assert delivered.status == "delivered"
        assert shipped.tracking_number == "TRK-1"
        for column in ("confirmed_at", "packed_at", "shipped_at", "delivered_at"):
            assert getattr(delivered, column) is not None

    def test_cancel_restores_stock_and_rejects_commission(self, db_session, staff_actor, order, product, published):
        order_service.update_status(order.id, "cancelled", staff_actor)

        assert db_session.get(Product, product.id).stock_quantity == 5
        ret = db_session.query(InventoryTransaction).filter_by(product_id=product.id, type="return").one()
        assert ret.quantity_delta == 2
        assert ret.reference_id == order.id

        tx = db_session.query(CommissionTransaction).filter_by(order_id=order.id).one()
        assert tx.status == COMMISSION_REJECTED

        changed = [e for e in published if e.type == events.ORDER_STATUS_CHANGED]
        assert changed[0].payload["from_status"] == "pending"
        assert changed[0].payload["to_status"] == "cancelled"

    def test_second_cancel_is_rejected_without_side_effects(self, db_session, staff_actor, order, product):
        order_service.update_status(order.id, "cancelled", staff_actor)

        with pytest.raises(InvalidStatusTransition):
            order_service.update_status(order.id, "cancelled", staff_actor)

        assert db_session.get(Product, product.id).stock_quantity == 5
        assert db_session.query(InventoryTransaction).filter_by(type="return").count() == 1

    def test_cannot_skip_states(self, db_session, staff_actor, order):
        with pytest.raises(InvalidStatusTransition):
            order_service.update_status(order.id, "shipped", staff_actor)
        assert db_session.get(Order, order.id).status == "pending"

    def test_refund_after_delivery_restores_stock(self, db_session, admin_actor, order, product):
        _walk(order.id, ["confirmed", "processing", "packed", "shipped", "delivered", "refunded"], admin_actor)

        assert db_session.get(Order, order.id).status == "refunded"
        assert db_session.get(Product, product.id).stock_quantity == 5

    def test_cannot_cancel_after_shipping(self, db_session, admin_actor, order):
        _walk(order.id, ["confirmed", "processing", "packed", "shipped"], admin_actor)

        with pytest.raises(InvalidStatusTransition):
            order_service.update_status(order.id, "cancelled", admin_actor)

    def test_unknown_status(self, db_session, admin_actor, order):
        with pytest.raises(ValidationError):
            order_service.update_status(order.id, "lost", admin_actor)

    def test_other_staff_denied(self, db_session, other_staff_user, order):
        with pytest.raises(AccessDenied):
            order_service.update_status(order.id, "confirmed", Actor.from_user(other_staff_user))
        assert db_session.get(Order, order.id).status == "pending"

    def test_affiliate_denied(self, db_session, affiliate_actor, order):
        with pytest.raises(AccessDenied):
            order_service.update_status(order.id, "confirmed", affiliate_actor)


# =============================================================================
# PAYMENT STATE MACHINE
# =============================================================================


class TestUpdatePaymentStatus:

    @pytest.fixture
    def order(self, db_session, staff_actor, affiliate_actor, staff_commission, affiliate_commission,
              customer, channel, product):
        return _create(
            staff_actor, customer, channel,
            [{"product_id": product.id, "quantity": 1}],
            affiliate_id=affiliate_actor.id,
        )

    def _statuses(self, db_session, order_id):
        rows = db_session.query(CommissionTransaction).filter_by(order_id=order_id).all()
        return sorted(tx.status for tx in rows)

    def test_paid_approves_commissions(self, db_session, admin_actor, order, published):
        order_service.update_payment_status(order.id, "paid", admin_actor)

        assert db_session.get(Order, order.id).payment_status == "paid"
        assert self._statuses(db_session, order.id) == [COMMISSION_APPROVED, COMMISSION_APPROVED]
        types = [e.type for e in published]
        assert types.count(events.COMMISSION_APPROVED) == 2
        assert events.ORDER_PAYMENT_STATUS_CHANGED in types

    def test_refund_rejects_unpaid_commissions(self, db_session, admin_actor, admin_user, order):
        order_service.update_payment_status(order.id, "paid", admin_actor)
        staff_tx = (
            db_session.query(CommissionTransaction)
            .filter_by(order_id=order.id, commission_type=COMMISSION_STAFF)
            .one()
        )
        commission_service.mark_paid(staff_tx.id, admin_user.id)

        order_service.update_payment_status(order.id, "refunded", admin_actor)

        assert self._statuses(db_session, order.id) == [COMMISSION_PAID, COMMISSION_REJECTED]

    def test_payment_and_fulfillment_are_independent(self, db_session, admin_actor, order):
        order_service.update_status(order.id, "confirmed", admin_actor)
        order_service.update_payment_status(order.id, "paid", admin_actor)
        order_service.update_status(order.id, "processing", admin_actor)

        refreshed = db_session.get(Order, order.id)
        assert refreshed.status == "processing"
        assert refreshed.payment_status == "paid"

    def test_pending_cannot_be_refunded(self, db_session, admin_actor, order):
        with pytest.raises(InvalidStatusTransition):
            order_service.update_payment_status(order.id, "refunded", admin_actor)

    def test_failed_is_terminal(self, db_session, admin_actor, order):
        order_service.update_payment_status(order.id, "failed", admin_actor)
        with pytest.raises(InvalidStatusTransition):
            order_service.update_payment_status(order.id, "paid", admin_actor)

    def test_affiliate_denied(self, db_session, affiliate_actor, order):
        with pytest.raises(AccessDenied):
            order_service.update_payment_status(order.id, "paid", affiliate_actor)


# =============================================================================
# EVENTS
# =============================================================================


class TestEvents:

    def test_failing_sink_does_not_undo_commit(self, app, db_session, admin_actor, customer, channel, product, published):
        def broken(ev):
            raise RuntimeError("notification service down")

        events.register_sink(app, broken)
        try:
            order = _create(admin_actor, customer, channel, [{"product_id": product.id, "quantity": 1}])
        finally:
            app.extensions["oms"]["event_sinks"].remove(broken)

        assert db_session.get(Order, order.id) is not None
        assert db_session.get(Product, product.id).stock_quantity == 4
        assert [e.type for e in published] == [events.ORDER_CREATED]

    def test_rejected_transition_publishes_nothing(self, db_session, admin_actor, customer, channel, product, published):
        order = _create(admin_actor, customer, channel, [{"product_id": product.id, "quantity": 1}])
        published.clear()

        with pytest.raises(InvalidStatusTransition):
            order_service.update_status(order.id, "delivered", admin_actor)

        assert published == []


# =============================================================================
# VISIBILITY
# =============================================================================


class TestVisibility:

    @pytest.fixture
    def orders(self, db_session, admin_actor, staff_actor, affiliate_actor, customer, channel, make_product):
        p = make_product(stock_quantity=50)
        mine = _create(staff_actor, customer, channel, [{"product_id": p.id, "quantity": 1}])
        referred = _create(
            admin_actor, customer, channel,
            [{"product_id": p.id, "quantity": 1}],
            affiliate_id=affiliate_actor.id,
        )
        unrelated = _create(admin_actor, customer, channel, [{"product_id": p.id, "quantity": 1}])
        return mine, referred, unrelated

    def test_list_scoped_by_role(self, db_session, admin_actor, staff_actor, affiliate_actor, orders):
        mine, referred, _unrelated = orders

        assert order_service.list_orders(admin_actor)["count"] == 3
        assert [o["id"] for o in order_service.list_orders(staff_actor)["items"]] == [mine.id]
        assert [o["id"] for o in order_service.list_orders(affiliate_actor)["items"]] == [referred.id]

    def test_get_order_denied_outside_scope(self, db_session, staff_actor, affiliate_actor, orders):
        mine, referred, unrelated = orders

        assert order_service.get_order(mine.id, staff_actor).id == mine.id
        with pytest.raises(AccessDenied):
            order_service.get_order(unrelated.id, staff_actor)
        with pytest.raises(AccessDenied):
            order_service.get_order(mine.id, affiliate_actor)

    def test_pagination(self, db_session, admin_actor, orders):
        result = order_service.list_orders(admin_actor, page=1, per_page=2)

        assert result["count"] == 2
        assert result["pagination"]["total"] == 3
        assert result["pagination"]["total_pages"] == 2
        assert result["pagination"]["has_next"] is True

    def test_status_filter(self, db_session, admin_actor, orders):
        mine, _referred, _unrelated = orders
        order_service.update_status(mine.id, "confirmed", admin_actor)

        result = order_service.list_orders(admin_actor, {"status": "confirmed"})
        assert [o["id"] for o in result["items"]] == [mine.id]

    def test_line_items_cannot_be_edited(self, db_session, orders):
        line = orders[0].items[0]
        line.quantity = 99
        with pytest.raises(RuntimeError):
            db_session.flush()
        db_session.rollback()
