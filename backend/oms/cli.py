# Overview: Flask CLI command groups for bootstrap, catalog seeding, and maintenance.

# backend/oms/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Use: flask --app oms <group> <command> [options]
#
# System bootstrap:
# - flask --app oms system init [--admin-username admin] [--admin-email admin@oms.local]
#   Idempotent bootstrap: creates tables, the admin user and the website channel.
#
# Users:
# - flask --app oms users create --username alice --email alice@shop.local --role staff
# - flask --app oms users issue-token alice [--ttl-hours 24]
#   Prints a bearer token for the API. Only its hash is stored.
# - flask --app oms users list
#
# Catalog seeding:
# - flask --app oms catalog add-category "Electronics" [--slug electronics]
# - flask --app oms catalog add-product --category electronics --name "Phone" --price-cents 10000 --stock 5
#
# Commissions:
# - flask --app oms commissions set-config alice --type percentage --value 500 [--from 2026-01-01] [--until 2026-12-31]
#   Percentage values are basis points (500 = 5%); fixed values are cents.
#
# Inventory:
# - flask --app oms inventory reconcile [--product-id 1]
#   Compare stock_quantity with the inventory ledger and report drift.

import click
from flask.cli import with_appcontext

from .errors import OmsError
from .extensions import db
from .models import Category, Product, User
from .models.auth import ROLE_ADMIN, ROLES
from .models.channels import CHANNEL_WEBSITE
from .models.commissions import RATE_TYPES
from .services import catalog_service, commission_service, inventory_service, session_service, user_service
from .services.customer_service import resolve_channel
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--admin-username', default='admin', help='Username of the bootstrap admin')
@click.option('--admin-email', default='admin@oms.local', help='Email of the bootstrap admin')
@with_appcontext
def init_system(admin_username, admin_email):
    """Create tables, the bootstrap admin and the website channel."""
    click.echo("START Initializing order management system...")

    db.create_all()
    click.echo("PASS Tables ready")

    admin = user_service.get_user_by_username(admin_username)
    if admin is None:
        admin = user_service.create_user(admin_username, admin_email, "Administrator", ROLE_ADMIN)
        click.echo(f"PASS Created admin user: {admin.username} (ID: {admin.id})")
    else:
        click.echo(f"WARN  User '{admin_username}' already exists, skipping...")

    channel = resolve_channel(CHANNEL_WEBSITE)
    db.session.commit()
    click.echo(f"PASS Website channel: {channel.name} (ID: {channel.id})")

    click.echo("\nDONE Initialized. Issue a token with: flask --app oms users issue-token " + admin.username)


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--email', prompt=True)
@click.option('--full-name', default=None)
@click.option('--role', type=click.Choice(ROLES), default='staff', show_default=True)
@with_appcontext
def create_user_cmd(username, email, full_name, role):
    try:
        user = user_service.create_user(username, email, full_name, role)
    except OmsError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created user: {user.username} ({user.email}) with role '{user.role}' (ID: {user.id})")


@users_group.command('issue-token')
@click.argument('username')
@click.option('--ttl-hours', type=int, default=None, help='Defaults to SESSION_TTL_HOURS')
@with_appcontext
def issue_token_cmd(username, ttl_hours):
    user = user_service.get_user_by_username(username)
    if user is None:
        click.echo(f"FAIL User '{username}' not found")
        raise SystemExit(1)
    try:
        session, token = session_service.create_session(user.id, ttl_hours)
    except OmsError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Token for {user.username} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@users_group.command('set-active')
@click.argument('username')
@click.option('--active/--inactive', default=True, show_default=True)
@with_appcontext
def set_active_cmd(username, active):
    """Deactivated users keep their history but can no longer authenticate."""
    user = user_service.get_user_by_username(username)
    if user is None:
        click.echo(f"FAIL User '{username}' not found")
        raise SystemExit(1)
    user_service.set_user_active(user, active)
    click.echo(f"PASS {user.username} is now {'active' if active else 'inactive'}")


@users_group.command('list')
@with_appcontext
def list_users_cmd():
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.username:<20} {user.role:<10} {status}")


@click.group('catalog')
def catalog_group():
    """Catalog seeding commands."""


@catalog_group.command('add-category')
@click.argument('name')
@click.option('--slug', default=None)
@with_appcontext
def add_category_cmd(name, slug):
    try:
        category = catalog_service.create_category(name, slug)
    except OmsError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created category {category.name} (slug {category.slug}, SKU prefix {category.sku_prefix})")


@catalog_group.command('add-product')
@click.option('--category', 'category_slug', required=True, help='Category slug')
@click.option('--name', required=True)
@click.option('--price-cents', type=int, required=True)
@click.option('--cost-cents', type=int, default=0, show_default=True)
@click.option('--stock', type=int, default=0, show_default=True)
@click.option('--low-stock-threshold', type=int, default=10, show_default=True)
@with_appcontext
def add_product_cmd(category_slug, name, price_cents, cost_cents, stock, low_stock_threshold):
    category = db.session.query(Category).filter_by(slug=category_slug).first()
    if category is None:
        click.echo(f"FAIL Category '{category_slug}' not found")
        raise SystemExit(1)
    try:
        product = catalog_service.create_product(
            category_id=category.id,
            name=name,
            price_cents=price_cents,
            cost_cents=cost_cents,
            stock_quantity=stock,
            low_stock_threshold=low_stock_threshold,
        )
    except OmsError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS Created product {product.sku} {product.name} (stock {product.stock_quantity})")


@catalog_group.command('remove-product')
@click.argument('sku')
@with_appcontext
def remove_product_cmd(sku):
    product = catalog_service.get_product_by_sku(sku)
    if product is None:
        click.echo(f"FAIL Product '{sku}' not found")
        raise SystemExit(1)
    result = catalog_service.delete_product(product.id)
    if result["archived"]:
        click.echo(f"PASS {sku} has history and was archived")
    else:
        click.echo(f"PASS {sku} deleted")


@click.group('commissions')
def commissions_group():
    """Commission configuration commands."""


@commissions_group.command('set-config')
@click.argument('username')
@click.option('--type', 'commission_type', type=click.Choice(RATE_TYPES), required=True)
@click.option('--value', type=int, required=True, help='Basis points for percentage, cents for fixed')
@click.option('--from', 'effective_from', default=None, help='ISO date or datetime (default: now)')
@click.option('--until', 'effective_until', default=None, help='ISO date or datetime')
@with_appcontext
def set_config_cmd(username, commission_type, value, effective_from, effective_until):
    user = user_service.get_user_by_username(username)
    if user is None:
        click.echo(f"FAIL User '{username}' not found")
        raise SystemExit(1)
    try:
        config = commission_service.create_config(
            user.id,
            commission_type,
            value,
            parse_iso_datetime(effective_from),
            parse_iso_datetime(effective_until),
        )
    except (OmsError, ValueError) as e:
        click.echo(f"FAIL {getattr(e, 'message', str(e))}")
        raise SystemExit(1)
    click.echo(f"PASS Config {config.id}: {username} {commission_type} {value}")


@click.group('inventory')
def inventory_group():
    """Inventory maintenance commands."""


@inventory_group.command('reconcile')
@click.option('--product-id', type=int, default=None)
@with_appcontext
def reconcile_cmd(product_id):
    """Report products whose stock differs from their ledger."""
    if product_id is not None:
        product_ids = [product_id]
    else:
        product_ids = [row.id for row in db.session.query(Product.id).order_by(Product.id.asc())]

    drifted = 0
    for pid in product_ids:
        try:
            result = inventory_service.reconcile_stock(pid)
        except OmsError as e:
            click.echo(f"FAIL {e.message}")
            raise SystemExit(1)
        if result["in_sync"]:
            click.echo(f"PASS {result['sku']}: {result['stock_quantity']}")
        else:
            drifted += 1
            click.echo(
                f"FAIL {result['sku']}: stock {result['stock_quantity']} "
                f"ledger {result['ledger_quantity']} drift {result['drift']}"
            )

    click.echo(f"\nDONE {len(product_ids)} product(s) checked, {drifted} with drift")
    if drifted:
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(commissions_group)
    app.cli.add_command(inventory_group)
