# Overview: Flask CLI command groups for bootstrap and maintenance.

# backend/boxoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (dev/test; production uses `flask db upgrade`).
#
# Users:
# - python -m flask users create --name "Admin" --email admin@boxoffice.local --password "Password123!" --role admin
#   Create a user (prompts if options are omitted).
# - python -m flask users list
#   List all users with role and active status.
#
# Orders:
# - python -m flask orders expire-pending [--older-than-minutes 30]
#   Cancel abandoned pending orders and release their tickets and promotion uses.
#   Schedule this from cron (e.g. every 5 minutes).
#
# Payments:
# - python -m flask payments list-flagged --admin-email admin@boxoffice.local
#   Late payments that arrived after their order expired.
# - python -m flask payments refund-flagged chapa TX-... --admin-email admin@boxoffice.local
#   Send a flagged payment back through its provider.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.auth import VALID_ROLES
from .errors import TicketingError, ValidationError
from .services.auth_service import create_user
from .services import order_service, payment_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--name', prompt=True)
@click.option('--email', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice(VALID_ROLES), default='attendee', show_default=True)
@with_appcontext
def create_user_command(name, email, password, role):
    """Create a user with a bcrypt-hashed password."""
    try:
        user = create_user(name=name, email=email, password=password, role=role)
    except ValidationError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Created user: {user.email} (ID: {user.id}) with role '{user.role}'")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found")
        return
    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>5}  {user.email:<40} {user.role:<10} {status}")


@click.group('orders')
def orders_group():
    """Order maintenance commands."""


@orders_group.command('expire-pending')
@click.option('--older-than-minutes', type=int, default=None,
              help='Override PENDING_ORDER_TTL_MINUTES')
@with_appcontext
def expire_pending(older_than_minutes):
    """Cancel pending orders older than the TTL and release their holds."""
    ttl = older_than_minutes if older_than_minutes is not None else current_app.config["PENDING_ORDER_TTL_MINUTES"]
    expired = order_service.expire_pending_orders(ttl)
    click.echo(f"PASS Expired {expired} pending orders older than {ttl} minutes")


@click.group('payments')
def payments_group():
    """Payment reconciliation commands."""


def _admin_by_email(email):
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if user is None or not user.is_admin:
        raise click.ClickException(f"No admin user with email {email}")
    return user


@payments_group.command('list-flagged')
@click.option('--admin-email', required=True)
@with_appcontext
def list_flagged(admin_email):
    """List successful payments flagged for refund."""
    flagged = payment_service.list_flagged_payments(_admin_by_email(admin_email))
    if not flagged:
        click.echo("No flagged payments")
        return
    for txn in flagged:
        click.echo(f"{txn.provider:<8} {txn.transaction_id:<24} order={txn.order_id:<6} {txn.amount_cents} {txn.currency}")


@payments_group.command('refund-flagged')
@click.argument('provider')
@click.argument('tx_ref')
@click.option('--admin-email', required=True)
@click.option('--reason', default=None)
@with_appcontext
def refund_flagged(provider, tx_ref, admin_email, reason):
    """Refund one flagged payment in full."""
    try:
        txn = payment_service.refund_flagged_payment(provider, tx_ref, _admin_by_email(admin_email), reason)
    except TicketingError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Refunded {txn.transaction_id} ({txn.amount_cents} {txn.currency}, reference {txn.refund_reference})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(payments_group)
