# Overview: Flask CLI command groups for bootstrap, inspection, scheduled jobs and maintenance.

# backend/chowline/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init [--admin-email admin@chowline.local]
#   Create tables (with storage guards) and a default admin account.
#
# User inspection/bootstrap:
# - python -m flask users list [--role restaurant_owner]
#   List users with roles and active status.
# - python -m flask users create --email owner@example.com --password "Password123!" --role restaurant_owner
#   Create a user (prompts if options are omitted).
# - python -m flask users set-role 7 admin
#   Change a user's role and revoke their sessions.
#
# Scheduled jobs (use the configured CRON_SECRET):
# - python -m flask jobs cancel-stale [--minutes 120]
#   Cancel orders left awaiting payment past the threshold.
# - python -m flask jobs export-audit [--date 2026-01-31]
#   Archive one day of audit entries (default: yesterday, UTC).
# - python -m flask jobs security-monitor
#   Summarize recent audit activity and check the last export landed.
#
# Maintenance:
# - python -m flask maintenance cleanup-sessions
#   Delete sessions expired or revoked past the retention window.
# - python -m flask maintenance cleanup-throttle
#   Delete throttle hits older than every bucket's window.

import json

import click
from flask.cli import with_appcontext

from .errors import ChowlineError
from .extensions import db
from .models import User
from .models.identity import VALID_ROLES, ROLE_ADMIN
from .services import audit_export_service, scheduler_service, session_service, throttle_service
from .services.auth_service import create_user, set_role, PasswordValidationError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init')
@click.option('--admin-email', default='admin@chowline.local', show_default=True)
@click.option('--admin-password', default='Password123!', show_default=True)
@with_appcontext
def init_system(admin_email, admin_password):
    """
    Initialize the database and a default admin.

    Creates:
    - All tables, plus the storage guards on orders, settlements and audit entries
    - Admin user (skipped if the email already exists)

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing Chowline...")

    db.create_all()
    click.echo("PASS Tables created")

    existing = db.session.query(User).filter_by(email=admin_email.strip().lower()).first()
    if existing:
        click.echo(f"WARN  User '{admin_email}' already exists, skipping...")
        return

    try:
        user = create_user(admin_email, admin_password, role=ROLE_ADMIN, full_name="Administrator")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {e.message}")
        return
    except ChowlineError as e:
        click.echo(f"FAIL Failed to create admin: {e.message}")
        return

    click.echo(f"PASS Created admin: {user.email} (ID: {user.id})")
    click.echo("\nSECURITY Change the admin password immediately in production!")


@click.group('users')
def users_group():
    """User inspection and bootstrap."""


@users_group.command('list')
@click.option('--role', type=click.Choice(VALID_ROLES), help='Filter by role')
@with_appcontext
def list_users(role):
    """List users with role and active status."""
    query = db.session.query(User)
    if role:
        query = query.filter(User.role == role)
    users = query.order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo(f"\n{'ID':<5} {'Email':<35} {'Role':<18} {'Active':<6}")
    click.echo("-" * 68)
    for user in users:
        click.echo(f"{user.id:<5} {user.email:<35} {user.role:<18} {'yes' if user.is_active else 'no':<6}")


@users_group.command('create')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(VALID_ROLES), prompt=True, help='Role')
@click.option('--full-name', default=None, help='Display name')
@with_appcontext
def create_user_cli(email, password, role, full_name):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(email, password, role=role, full_name=full_name)
    except ChowlineError as e:
        click.echo(f"FAIL {e.message}")
        return

    click.echo(f"PASS Created user: {user.email} (ID: {user.id}) with role '{user.role}'")


@users_group.command('set-role')
@click.argument('user_id', type=int)
@click.argument('role', type=click.Choice(VALID_ROLES))
@with_appcontext
def set_role_cli(user_id, role):
    """Change a user's role. Their sessions are revoked."""
    try:
        user = set_role(user_id, role)
    except ChowlineError as e:
        click.echo(f"FAIL {e.message}")
        return

    revoked = session_service.revoke_all_user_sessions(user.id, reason="Role changed")
    click.echo(f"PASS User {user.id} is now '{user.role}' ({revoked} sessions revoked)")


@click.group('jobs')
def jobs_group():
    """Scheduled jobs, run with the configured scheduler secret."""


def _capability():
    try:
        return scheduler_service.capability_from_config()
    except ChowlineError:
        raise click.ClickException("CRON_SECRET is not configured")


@jobs_group.command('cancel-stale')
@click.option('--minutes', type=int, default=None, help='Threshold (default: STALE_ORDER_MINUTES)')
@with_appcontext
def cancel_stale_cli(minutes):
    """Cancel orders left awaiting payment past the threshold."""
    result = scheduler_service.cancel_stale_orders(_capability(), threshold_minutes=minutes)
    click.echo(
        f"Cancelled {result['cancelled_orders']} order(s) older than {result['threshold_minutes']} minutes."
    )
    if result["skipped_ids"]:
        click.echo(f"WARN  Skipped (moved on concurrently): {result['skipped_ids']}")


@jobs_group.command('export-audit')
@click.option('--date', 'export_date', type=click.DateTime(formats=['%Y-%m-%d']), default=None,
              help='Day to export (default: yesterday, UTC)')
@with_appcontext
def export_audit_cli(export_date):
    """Archive one day of audit entries to write-once storage."""
    try:
        result = audit_export_service.export_daily_audit(
            _capability(),
            export_date=export_date.date() if export_date else None,
        )
    except ChowlineError as e:
        raise click.ClickException(e.message)

    click.echo(json.dumps(result, indent=2, sort_keys=True))


@jobs_group.command('security-monitor')
@with_appcontext
def security_monitor_cli():
    """Summarize recent audit activity and check yesterday's export."""
    result = scheduler_service.run_security_monitor(_capability())
    click.echo(json.dumps(result, indent=2, sort_keys=True))
    if result["export_missing"]:
        raise click.ClickException(f"Audit export for {result['export_date_checked']} is missing")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-sessions')
@with_appcontext
def cleanup_sessions_cli():
    """Delete sessions expired or revoked past the retention window."""
    deleted = session_service.cleanup_expired_sessions()
    click.echo(f"Deleted {deleted} expired sessions.")


@maintenance_group.command('cleanup-throttle')
@with_appcontext
def cleanup_throttle_cli():
    deleted = throttle_service.cleanup_expired_hits()
    click.echo(f"Deleted {deleted} throttle hits.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(jobs_group)
    app.cli.add_command(maintenance_group)
