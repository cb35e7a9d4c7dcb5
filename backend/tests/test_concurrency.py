"""
Concurrency tests against a file-backed SQLite database.

Verifies:
- Two orders racing for the same stock never oversell
- SKU allocation hands out each number once under contention
- Fulfillment and payment updates on one order never overwrite each other
"""

import os
import tempfile
import threading

import pytest

from oms import create_app
from oms.authorization import Actor
from oms.errors import InsufficientStock
from oms.extensions import db
from oms.models import Customer, InventoryTransaction, Order, Product, SalesChannel, User
from oms.services import catalog_service, inventory_service, order_service


@pytest.fixture
def file_app():
    tmpdir = tempfile.TemporaryDirectory()
    db_path = os.path.join(tmpdir.name, "concurrency.db")
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "WEBHOOK_SECRET": "",
    })

    with app.app_context():
        db.create_all()

        admin = User(username="admin", email="admin@oms.test", full_name="Admin", role="admin")
        customer = Customer(email="race@example.com", full_name="Race Buyer", total_orders=0, total_spent_cents=0)
        channel = SalesChannel(name="Website", type="website", is_active=True)
        db.session.add_all([admin, customer, channel])
        db.session.commit()

        category = catalog_service.create_category("Gadgets")
        product = catalog_service.create_product(
            category_id=category.id, name="Hot Item", price_cents=1000, stock_quantity=5, low_stock_threshold=0
        )

        app.config["SEED"] = {
            "admin_id": admin.id,
            "customer_id": customer.id,
            "channel_id": channel.id,
            "category_id": category.id,
            "product_id": product.id,
        }
        db.session.remove()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.session.remove()
        db.engine.dispose()
    tmpdir.cleanup()


def _run_parallel(app, target, count):
    """Start `count` workers together; each runs in its own app context."""
    barrier = threading.Barrier(count)
    results = []
    lock = threading.Lock()

    def worker(index):
        with app.app_context():
            try:
                barrier.wait()
                outcome = target(index)
                with lock:
                    results.append(("ok", outcome))
            except Exception as exc:
                with lock:
                    results.append(("error", exc))
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestConcurrentOrders:

    def test_racing_orders_never_oversell(self, file_app):
        seed = file_app.config["SEED"]
        actor = Actor(id=seed["admin_id"], role="admin")

        def place(_index):
            order = order_service.create_order(
                cart_items=[{"product_id": seed["product_id"], "quantity": 3}],
                customer_id=seed["customer_id"],
                channel_id=seed["channel_id"],
                shipping={"address": "1 Race Way"},
                payment_method="cod",
                actor=actor,
            )
            return order.id

        results = _run_parallel(file_app, place, 2)

        successes = [value for kind, value in results if kind == "ok"]
        failures = [value for kind, value in results if kind == "error"]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientStock)

        with file_app.app_context():
            assert db.session.get(Product, seed["product_id"]).stock_quantity == 2
            assert db.session.query(Order).count() == 1
            assert db.session.query(InventoryTransaction).filter_by(type="sale").count() == 1
            assert inventory_service.reconcile_stock(seed["product_id"])["in_sync"] is True

    def test_sku_allocation_is_unique(self, file_app):
        seed = file_app.config["SEED"]

        def create(index):
            product = catalog_service.create_product(
                category_id=seed["category_id"], name=f"Item {index}", price_cents=100
            )
            return product.sku

        results = _run_parallel(file_app, create, 8)

        errors = [value for kind, value in results if kind == "error"]
        skus = [value for kind, value in results if kind == "ok"]
        assert not errors
        assert len(skus) == 8
        assert len(set(skus)) == 8

    def test_status_and_payment_updates_both_land(self, file_app):
        seed = file_app.config["SEED"]
        actor = Actor(id=seed["admin_id"], role="admin")

        with file_app.app_context():
            order_id = order_service.create_order(
                cart_items=[{"product_id": seed["product_id"], "quantity": 1}],
                customer_id=seed["customer_id"],
                channel_id=seed["channel_id"],
                shipping=None,
                payment_method="cod",
                actor=actor,
            ).id
            db.session.remove()

        def update(index):
            if index == 0:
                return order_service.update_status(order_id, "confirmed", actor).status
            return order_service.update_payment_status(order_id, "paid", actor).payment_status

        results = _run_parallel(file_app, update, 2)

        assert [kind for kind, _ in results] == ["ok", "ok"]
        with file_app.app_context():
            order = db.session.get(Order, order_id)
            assert order.status == "confirmed"
            assert order.payment_status == "paid"
