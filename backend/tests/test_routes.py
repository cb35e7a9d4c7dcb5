"""
HTTP surface tests.

Verifies:
- Unauthenticated requests return 401
- Role gates return 403 before any work happens
- Typed service failures map to stable JSON error codes
- Happy paths for orders, commissions and inventory over HTTP
"""

import pytest

from oms.extensions import db
from oms.models import CommissionTransaction, Order, Product
from oms.services import session_service


def _order_body(customer, channel, product, quantity=2, **extra):
    body = {
        "customer_id": customer.id,
        "channel_id": channel.id,
        "items": [{"product_id": product.id, "quantity": quantity}],
        "shipping": {"address": "1 Main St", "city": "Springfield"},
        "shipping_fee_cents": 1000,
    }
    body.update(extra)
    return body


# =============================================================================
# UNAUTHENTICATED ACCESS — 401
# =============================================================================


class TestUnauthenticatedAccess:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/orders"),
            ("POST", "/api/orders"),
            ("GET", "/api/orders/1"),
            ("PATCH", "/api/orders/1/status"),
            ("PATCH", "/api/orders/1/payment-status"),
            ("GET", "/api/commissions"),
            ("GET", "/api/commissions/summary"),
            ("GET", "/api/commissions/monthly"),
            ("GET", "/api/commissions/leaderboard"),
            ("POST", "/api/commissions/1/approve"),
            ("GET", "/api/commissions/configs"),
            ("GET", "/api/inventory/low-stock"),
            ("GET", "/api/inventory/transactions/recent"),
            ("POST", "/api/inventory/1/add"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_unknown_token(self, client, db_session):
        resp = client.get("/api/orders", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid or expired token"

    def test_revoked_token(self, client, db_session, admin_user):
        _session, token = session_service.create_session(admin_user.id)
        session_service.revoke_session(token)

        resp = client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_inactive_user_token(self, client, db_session, admin_user):
        _session, token = session_service.create_session(admin_user.id)
        admin_user.is_active = False
        db_session.commit()

        resp = client.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401


# =============================================================================
# ROLE GATES — 403
# =============================================================================


class TestRoleGates:

    def test_affiliate_cannot_create_order(self, client, affiliate_headers, customer, channel, product):
        resp = client.post("/api/orders", json=_order_body(customer, channel, product), headers=affiliate_headers)

        assert resp.status_code == 403
        assert resp.get_json()["code"] == "access_denied"
        assert db.session.get(Product, product.id).stock_quantity == 5

    @pytest.mark.parametrize(
        "method,path",
        [
            ("POST", "/api/commissions/1/approve"),
            ("POST", "/api/commissions/1/pay"),
            ("GET", "/api/commissions/configs"),
            ("POST", "/api/commissions/configs"),
            ("GET", "/api/inventory/value"),
        ],
    )
    def test_staff_denied_admin_routes(self, client, staff_headers, method, path):
        resp = getattr(client, method.lower())(path, headers=staff_headers)
        assert resp.status_code == 403

    def test_affiliate_denied_inventory(self, client, affiliate_headers, product):
        resp = client.post(f"/api/inventory/{product.id}/add", json={"quantity": 5}, headers=affiliate_headers)
        assert resp.status_code == 403

    def test_staff_cannot_see_unassigned_order(
        self, client, admin_headers, staff_headers, customer, channel, product
    ):
        created = client.post("/api/orders", json=_order_body(customer, channel, product), headers=admin_headers)
        order_id = created.get_json()["order"]["id"]

        assert client.get(f"/api/orders/{order_id}", headers=staff_headers).status_code == 403
        resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "confirmed"}, headers=staff_headers)
        assert resp.status_code == 403


# =============================================================================
# ORDERS
# =============================================================================


class TestOrderRoutes:

    def test_create_and_fetch(self, client, staff_headers, staff_commission, customer, channel, product):
        resp = client.post("/api/orders", json=_order_body(customer, channel, product), headers=staff_headers)

        assert resp.status_code == 201
        order = resp.get_json()["order"]
        assert order["total_cents"] == 22200
        assert order["staff_commission_cents"] == 1110
        assert order["items"][0]["quantity"] == 2

        detail = client.get(f"/api/orders/{order['id']}", headers=staff_headers).get_json()["order"]
        assert [c["amount_cents"] for c in detail["commissions"]] == [1110]

        listing = client.get("/api/orders?page=1&per_page=10", headers=staff_headers).get_json()
        assert listing["pagination"]["total"] == 1

    @pytest.mark.parametrize("quantity", [1.5, "1e3", "two", 0])
    def test_rejects_non_integer_quantity(self, client, admin_headers, customer, channel, product, quantity):
        resp = client.post(
            "/api/orders", json=_order_body(customer, channel, product, quantity=quantity), headers=admin_headers
        )
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "validation_error"
        assert db.session.query(Order).count() == 0

    def test_insufficient_stock_is_conflict(self, client, admin_headers, customer, channel, product):
        resp = client.post(
            "/api/orders", json=_order_body(customer, channel, product, quantity=6), headers=admin_headers
        )

        assert resp.status_code == 409
        body = resp.get_json()
        assert body["code"] == "insufficient_stock"
        assert body["details"]["available"] == 5

    def test_status_and_payment_flow(self, client, staff_headers, staff_commission, customer, channel, product):
        order_id = client.post(
            "/api/orders", json=_order_body(customer, channel, product), headers=staff_headers
        ).get_json()["order"]["id"]

        resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "confirmed"}, headers=staff_headers)
        assert resp.status_code == 200
        assert resp.get_json()["order"]["confirmed_at"] is not None

        resp = client.patch(
            f"/api/orders/{order_id}/payment-status", json={"payment_status": "paid"}, headers=staff_headers
        )
        assert resp.status_code == 200
        tx = db.session.query(CommissionTransaction).filter_by(order_id=order_id).one()
        assert tx.status == "approved"

        resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "delivered"}, headers=staff_headers)
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "invalid_status_transition"

    def test_missing_status(self, client, admin_headers):
        resp = client.patch("/api/orders/1/status", json={}, headers=admin_headers)
        assert resp.status_code == 400

    def test_unknown_order(self, client, admin_headers):
        resp = client.get("/api/orders/999999", headers=admin_headers)
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "not_found"


# =============================================================================
# COMMISSIONS
# =============================================================================


class TestCommissionRoutes:

    def test_config_approve_and_pay(self, client, admin_headers, staff_headers, staff_user, customer, channel, product):
        resp = client.post(
            "/api/commissions/configs",
            json={"user_id": staff_user.id, "commission_type": "percentage", "commission_value": 500,
                  "effective_from": "2020-01-01"},
            headers=admin_headers,
        )
        assert resp.status_code == 201

        order_id = client.post(
            "/api/orders", json=_order_body(customer, channel, product), headers=staff_headers
        ).get_json()["order"]["id"]
        commission_id = db.session.query(CommissionTransaction).filter_by(order_id=order_id).one().id

        assert client.post(f"/api/commissions/{commission_id}/pay", headers=admin_headers).status_code == 409
        assert client.post(f"/api/commissions/{commission_id}/approve", headers=admin_headers).status_code == 200
        resp = client.post(f"/api/commissions/{commission_id}/pay", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["commission"]["status"] == "paid"

        summary = client.get("/api/commissions/summary", headers=staff_headers).get_json()
        assert summary["user_id"] == staff_user.id
        assert summary["summary"]["paid"] == {"count": 1, "amount_cents": 1110}

    def test_monthly_and_leaderboard(
        self, client, admin_headers, staff_headers, affiliate_headers, staff_user, affiliate_user,
        staff_commission, customer, channel, product,
    ):
        client.post("/api/orders", json=_order_body(customer, channel, product), headers=staff_headers)

        mine = client.get("/api/commissions/monthly?user_id=999", headers=staff_headers).get_json()
        assert mine["user_id"] == staff_user.id
        assert mine["items"][0]["amount_cents"] == 1110

        theirs = client.get(f"/api/commissions/monthly?user_id={affiliate_user.id}", headers=admin_headers).get_json()
        assert theirs["items"] == []

        board = client.get("/api/commissions/leaderboard?period=all", headers=affiliate_headers).get_json()
        assert [row["user_id"] for row in board["items"]] == [staff_user.id, affiliate_user.id]

        resp = client.get("/api/commissions/leaderboard?period=decade", headers=admin_headers)
        assert resp.status_code == 400

    def test_overlapping_config_conflict(self, client, admin_headers, staff_user, staff_commission):
        resp = client.post(
            "/api/commissions/configs",
            json={"user_id": staff_user.id, "commission_type": "fixed", "commission_value": 100},
            headers=admin_headers,
        )
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "conflict"


# =============================================================================
# INVENTORY
# =============================================================================


class TestInventoryRoutes:

    def test_add_and_adjust(self, client, staff_headers, product):
        resp = client.post(f"/api/inventory/{product.id}/add", json={"quantity": 10}, headers=staff_headers)
        assert resp.status_code == 200
        assert resp.get_json()["product"]["stock_quantity"] == 15

        resp = client.post(f"/api/inventory/{product.id}/adjust", json={"new_quantity": 1}, headers=staff_headers)
        assert resp.get_json()["product"]["stock_quantity"] == 1

        low = client.get("/api/inventory/low-stock", headers=staff_headers).get_json()
        assert [p["id"] for p in low["low_stock"]] == [product.id]

        txs = client.get(f"/api/inventory/{product.id}/transactions", headers=staff_headers).get_json()
        assert [t["type"] for t in txs["items"]] == ["adjustment", "purchase", "purchase"]

    def test_recent_transactions(self, client, staff_headers, product):
        client.post(f"/api/inventory/{product.id}/add", json={"quantity": 3}, headers=staff_headers)

        body = client.get("/api/inventory/transactions/recent?days=7", headers=staff_headers).get_json()
        assert body["count"] == 2
        assert body["items"][0]["quantity_delta"] == 3
        assert body["items"][0]["sku"] == product.sku

        resp = client.get("/api/inventory/transactions/recent?days=0", headers=staff_headers)
        assert resp.status_code == 400

    def test_adjust_rejects_negative(self, client, admin_headers, product):
        resp = client.post(f"/api/inventory/{product.id}/adjust", json={"new_quantity": -1}, headers=admin_headers)
        assert resp.status_code == 400

    def test_value_for_admin(self, client, admin_headers, product):
        body = client.get("/api/inventory/value", headers=admin_headers).get_json()
        assert body["selling_value_cents"] == 5 * 10000
        assert body["cost_value_cents"] == 5 * 6000


# =============================================================================
# SYSTEM
# =============================================================================


class TestSystemRoutes:

    def test_health(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"

    def test_unknown_route_is_json(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"
