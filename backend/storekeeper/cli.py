# Overview: Flask CLI command groups for bootstrap and demo data.

# backend/storekeeper/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--email admin@storekeeper.local]
#   Idempotent bootstrap: creates tables and the default admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system cleanup-sessions [--days 30]
#   Delete expired or revoked session tokens.
#
# Stores:
# - python -m flask stores list
# - python -m flask stores create --name "Boutique Centre" --address "Rue 12"
#
# Users:
# - python -m flask users list [--store-id 1]
# - python -m flask users create --email seller@shop.local --name "Awa" --role SELLER --store-id 1
#   Create a user (prompts for the password if omitted).
#
# Demo data:
# - python -m flask seed demo
#   Demo store, one seller and a handful of products with initial stock.

import click
from flask.cli import with_appcontext

from .errors import ServiceError
from .extensions import db
from .models import Store, User
from .models.auth import ROLE_ADMIN, ROLE_SELLER, ROLES
from .services.auth_service import create_user
from .services.products_service import create_product
from .services.session_service import cleanup_expired_sessions
from .services.store_service import create_store
from .services.tenant_service import AccessContext
from .validation import ValidationError

DEFAULT_ADMIN_EMAIL = "admin@storekeeper.local"
DEFAULT_PASSWORD = "Password123"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--email', default=DEFAULT_ADMIN_EMAIL, help='Admin email')
@click.option('--password', default=DEFAULT_PASSWORD, help='Admin password')
@with_appcontext
def init_system(email, password):
    """
    Create all tables and the default admin user.

    SECURITY: Change the default password immediately in production!
    """
    click.echo("START Initializing StoreKeeper...")
    db.create_all()
    click.echo("PASS Tables ready")

    admin = db.session.query(User).filter_by(email=email.lower()).first()
    if admin:
        click.echo(f"PASS Using existing admin: {admin.email} (ID: {admin.id})")
        return

    admin = create_user(email=email, name="Administrator", password=password, role=ROLE_ADMIN)
    click.echo(f"PASS Created admin: {admin.email} (ID: {admin.id})")
    click.echo("SECURITY Change the default password immediately")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@system_group.command('cleanup-sessions')
@click.option('--days', type=int, default=30, show_default=True, help='Delete sessions created before this many days ago')
@with_appcontext
def cleanup_sessions(days):
    """Delete expired or revoked session tokens older than --days."""
    deleted = cleanup_expired_sessions(older_than_days=days)
    click.echo(f"PASS Deleted {deleted} stale sessions")


@click.group('stores')
def stores_group():
    """Store management commands."""


@stores_group.command('list')
@with_appcontext
def list_stores_cli():
    for store in db.session.query(Store).order_by(Store.id.asc()).all():
        state = "active" if store.is_active else "inactive"
        click.echo(f"{store.id:>4}  {store.name}  ({state})")


@stores_group.command('create')
@click.option('--name', prompt=True, help='Store name')
@click.option('--address', default=None, help='Address')
@click.option('--phone', default=None, help='Phone')
@with_appcontext
def create_store_cli(name, address, phone):
    try:
        store = create_store(name, address=address, phone=phone)
    except (ServiceError, ValidationError) as e:
        click.echo(f"FAIL Failed to create store: {e}")
        return
    click.echo(f"PASS Created store: {store.name} (ID: {store.id})")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@click.option('--store-id', type=int, default=None, help='Filter by store')
@with_appcontext
def list_users_cli(store_id):
    q = db.session.query(User)
    if store_id is not None:
        q = q.filter(User.store_id == store_id)
    for user in q.order_by(User.id.asc()).all():
        state = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>4}  {user.email}  {user.role}  store={user.store_id}  ({state})")


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--name', prompt=True, help='Display name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(ROLES), default=ROLE_SELLER, show_default=True, help='Role')
@click.option('--store-id', type=int, default=None, help='Store ID (required for sellers)')
@with_appcontext
def create_user_cli(email, name, password, role, store_id):
    """
    Create a new user.

    Password must be at least 8 characters with letters and digits.
    """
    try:
        user = create_user(email=email, name=name, password=password, role=role, store_id=store_id)
    except (ServiceError, ValidationError) as e:
        click.echo(f"FAIL Failed to create user: {e}")
        return
    click.echo(f"PASS Created user: {user.email} with role '{user.role}' (store: {user.store_id})")
    click.echo("SECURITY Password securely hashed with bcrypt")


@click.group('seed')
def seed_group():
    """Demo data commands."""


DEMO_PRODUCTS = (
    # name, category, units/package, package purchase, unit sale, package sale, initial stock
    ("Riz parfumé 5kg", "Alimentation", 4, 1800000, 550000, 2000000, 40),
    ("Huile végétale 1L", "Alimentation", 12, 1440000, 150000, 1650000, 60),
    ("Savon de Marseille", "Hygiène", 24, 1200000, 60000, 1350000, 96),
    ("Lait concentré", "Alimentation", 48, 1920000, 50000, 2200000, 3),
)


@seed_group.command('demo')
@with_appcontext
def seed_demo():
    """Create a demo store, a seller and products with initial stock."""
    db.create_all()
    if db.session.query(Store).filter_by(name="Demo Store").first():
        click.echo("PASS Demo data already present")
        return

    store = create_store("Demo Store", address="Avenue de la Paix", phone="+000000000")
    seller = create_user(
        email="seller@storekeeper.local",
        name="Demo Seller",
        password=DEFAULT_PASSWORD,
        role=ROLE_SELLER,
        store_id=store.id,
    )
    access = AccessContext(user_id=seller.id, role=seller.role, store_id=store.id)

    for name, category, upp, purchase, unit_sale, package_sale, stock in DEMO_PRODUCTS:
        create_product(access=access, patch={
            "store_id": store.id,
            "name": name,
            "category": category,
            "units_per_package": upp,
            "package_purchase_price_cents": purchase,
            "unit_sale_price_cents": unit_sale,
            "package_sale_price_cents": package_sale,
            "initial_stock": stock,
        })

    click.echo(f"PASS Demo store {store.id}, seller {seller.email}, {len(DEMO_PRODUCTS)} products")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stores_group)
    app.cli.add_command(users_group)
    app.cli.add_command(seed_group)
