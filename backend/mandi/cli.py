# Overview: Flask CLI command groups for bootstrap, counters, scheduled jobs and locks.

# backend/mandi/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--admin-password "Password123"]
#   Create tables (if missing) and a default admin user.
#
# Users:
# - python -m flask users create --username ravi --name "Ravi" --password "Password123" --role staff
# - python -m flask users create --username hotel1 --name "Hotel One" --password "Password123" --role customer --customer-id 4
#
# Counters:
# - python -m flask counters seed [--dry-run]
#   Raise monthly order counters to the highest order number already stored.
#
# Scheduled jobs:
# - python -m flask jobs auto-confirm --batch-ref B-0930
#   Confirm all pending orders in a batch on exactly one instance (lock-guarded).
#
# Locks:
# - python -m flask locks release --name "batch-auto-confirm:B-0930"
#   Drop a stuck lease regardless of holder.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import User
from .models.auth import ROLES, ROLE_ADMIN
from .services import batch_service, counter_service, lock_service
from .services.auth_service import create_user, PasswordValidationError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--admin-username', default='admin', help='Username for the default admin')
@click.option('--admin-password', default='Password123', help='Password for the default admin')
@with_appcontext
def init_system(admin_username, admin_password):
    """
    Create all tables and a default admin user (idempotent).

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing system...")
    db.create_all()
    click.echo("PASS Tables ready")

    existing = db.session.query(User).filter_by(username=admin_username).first()
    if existing:
        click.echo(f"PASS Admin user already exists: {existing.username} (ID: {existing.id})")
        return

    try:
        user = create_user(admin_username, "Administrator", admin_password, ROLE_ADMIN)
    except (PasswordValidationError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created admin user: {user.username} (ID: {user.id})")


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--username', prompt=True)
@click.option('--name', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice(ROLES), default='staff', show_default=True)
@click.option('--customer-id', type=int, default=None, help='Required for customer users')
@with_appcontext
def create_user_command(username, name, password, role, customer_id):
    """Create a user."""
    try:
        user = create_user(username, name, password, role, customer_id)
    except (PasswordValidationError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, role: {user.role})")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with role and active status."""
    for user in db.session.query(User).order_by(User.id).all():
        status = "active" if user.is_active else "inactive"
        customer = f" customer={user.customer_id}" if user.customer_id else ""
        click.echo(f"{user.id}\t{user.username}\t{user.role}\t{status}{customer}")


@click.group('counters')
def counters_group():
    """Order numbering counters."""


@counters_group.command('seed')
@click.option('--dry-run', is_flag=True, help='Report changes without writing them')
@with_appcontext
def seed_counters(dry_run):
    """Raise monthly order counters to match existing order numbers."""
    report = counter_service.seed_counters_from_orders(dry_run=dry_run)
    if not report:
        click.echo("No existing order numbers found. Counters will start from 1.")
        return
    for row in report:
        previous = "-" if row["previous"] is None else row["previous"]
        click.echo(f"{row['action'].upper():8} {row['key']}: {previous} -> {row['max_sequence']}")
    if dry_run:
        click.echo("DRY RUN: no changes written")


@click.group('jobs')
def jobs_group():
    """Scheduled jobs (run from cron on every instance)."""


@jobs_group.command('auto-confirm')
@click.option('--batch-ref', required=True, help='Batch reference to confirm')
@click.option('--ttl', 'ttl_seconds', type=int, default=None, help='Lease TTL in seconds')
@click.option('--timeout', 'timeout_seconds', type=float, default=None, help='Job timeout in seconds')
@with_appcontext
def auto_confirm(batch_ref, ttl_seconds, timeout_seconds):
    """Confirm pending orders in a batch, guarded by a distributed lock."""
    outcome = batch_service.run_auto_confirm(
        batch_ref, ttl_seconds=ttl_seconds, timeout_seconds=timeout_seconds,
    )
    if outcome.skipped:
        click.echo(f"SKIP Lock held by {outcome.holder}")
        return
    if outcome.error:
        raise click.ClickException(outcome.error)
    confirmed = outcome.result or []
    click.echo(f"PASS Confirmed {len(confirmed)} orders")
    for number in confirmed:
        click.echo(f"  {number}")


@click.group('locks')
def locks_group():
    """Distributed lock maintenance."""


@locks_group.command('release')
@click.option('--name', required=True, help='Lock name')
@with_appcontext
def release_lock(name):
    """Force-release a lease regardless of holder."""
    if lock_service.force_release(name):
        current_app.logger.info("Lock %s force-released from CLI", name)
        click.echo(f"PASS Released {name}")
    else:
        click.echo(f"SKIP No lock named {name}")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(counters_group)
    app.cli.add_command(jobs_group)
    app.cli.add_command(locks_group)
