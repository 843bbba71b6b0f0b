# Overview: Flask CLI command groups for bootstrap and the scheduled delivery/billing jobs.

# backend/dairy/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--org "Org Name"] [--admin-phone 9000000000]
#   Idempotent bootstrap: creates the default organization and an admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users list [--org-id 1] [--role agent]
# - python -m flask users create --org-id 1 --phone 9000000001 --role agent --name "Ravi"
#   Customers may be created without a password (OTP login only).
#
# Scheduled jobs (cron these; every job is safe to re-run):
# - python -m flask jobs materialize [--org-id 1] [--days 14]
#   Daily: extend scheduled deliveries over the horizon.
# - python -m flask jobs plan-routes [--org-id 1] [--date 2026-01-02] [--agent-id 3 ...]
#   Nightly: plan tomorrow's routes.
# - python -m flask jobs invoices --cycle weekly|monthly [--as-of 2026-01-05]
#   Weekly/monthly: invoice postpaid customers for the closed period.
# - python -m flask jobs mark-overdue
# - python -m flask jobs dispatch-events
#   Push pending domain events to the notifier.
#
# Billing integrity:
# - python -m flask billing verify-ledger [--org-id 1]
#   Re-sum every ledger; exits non-zero when a ledger is broken.

import click
from datetime import timedelta
from flask.cli import with_appcontext

from .extensions import db
from .models import Organization, User
from .services.auth_service import create_user, PasswordValidationError, USER_ROLES
from .services import billing_service, event_service, ledger_service, materializer_service, route_planner_service
from .time_utils import parse_iso_date, today
from .validation import ConflictError, ValidationError


def _org_ids(org_id):
    if org_id:
        org = db.session.get(Organization, org_id)
        if not org:
            raise click.ClickException(f"Organization ID {org_id} not found")
        return [org.id]
    ids = [oid for (oid,) in db.session.query(Organization.id).filter_by(is_active=True).order_by(Organization.id)]
    if not ids:
        raise click.ClickException("No organization found. Run 'python -m flask system init' first.")
    return ids


def _date_option(value, default):
    if value is None:
        return default
    try:
        return parse_iso_date(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc))


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--org', 'org_name', default='DairyFresh', help='Organization name')
@click.option('--org-code', default='DEFAULT', help='Organization code')
@click.option('--admin-phone', default='9000000000', show_default=True, help='Admin login phone')
@click.option('--admin-password', default='Password123!', help='Admin password')
@with_appcontext
def init_system(org_name, org_code, admin_phone, admin_password):
    """
    Initialize the system: default organization and one admin.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing dairy delivery system...")

    org = db.session.query(Organization).filter_by(code=org_code).first()
    if not org:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    try:
        admin = create_user(org.id, admin_phone, admin_password, role='admin', full_name='Administrator')
        click.echo(f"PASS Created admin: {admin.phone}")
    except ConflictError:
        click.echo(f"WARN  Admin '{admin_phone}' already exists in org, skipping...")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed for admin: {str(e)}")

    click.echo("DONE System initialized. Change the admin password in production!")


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


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--org-id', type=int, help='Organization ID (uses default if not specified)')
@click.option('--phone', prompt=True, help='Login phone number')
@click.option('--role', type=click.Choice(sorted(USER_ROLES)), default='user', show_default=True)
@click.option('--name', 'full_name', help='Full name')
@click.option('--email', help='Email address')
@click.option('--payment-mode', type=click.Choice(['prepaid', 'postpaid']), default='prepaid', show_default=True)
@click.option('--password', help='Password (required for agents and admins)')
@with_appcontext
def create_user_cli(org_id, phone, role, full_name, email, payment_mode, password):
    """Create a customer, delivery agent or admin."""
    org_id = _org_ids(org_id)[0]
    if role != 'user' and not password:
        password = click.prompt('Password', hide_input=True, confirmation_prompt=True)
    try:
        user = create_user(
            org_id,
            phone,
            password,
            role=role,
            full_name=full_name,
            email=email,
            payment_mode=payment_mode,
        )
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
        return
    except (ValidationError, ConflictError) as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")
        return

    click.echo(f"PASS Created {user.role}: {user.phone} (ID: {user.id}, Org: {org_id})")


@users_group.command('list')
@click.option('--org-id', type=int, help='Filter by organization ID')
@click.option('--role', type=click.Choice(sorted(USER_ROLES)), help='Filter by role')
@with_appcontext
def list_users(org_id, role):
    """List users."""
    query = db.session.query(User)
    if org_id:
        query = query.filter_by(org_id=org_id)
    if role:
        query = query.filter_by(role=role)
    users = query.order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Org':<5} {'Phone':<16} {'Name':<25} {'Role':<8} {'Mode':<10} {'Status'}")
    click.echo("="*90)
    for user in users:
        click.echo(
            f"{user.id:<5} {user.org_id:<5} {user.phone:<16} {(user.full_name or ''):<25} "
            f"{user.role:<8} {user.payment_mode:<10} {user.status}"
        )
    click.echo("="*90 + "\n")


# =============================================================================
# JOBS
# =============================================================================

@click.group('jobs')
def jobs_group():
    """Scheduled delivery and billing jobs."""


@jobs_group.command('materialize')
@click.option('--org-id', type=int, help='Organization ID (all active orgs if omitted)')
@click.option('--days', type=int, help='Horizon in days (defaults to MATERIALIZE_HORIZON_DAYS)')
@with_appcontext
def materialize_cli(org_id, days):
    """Create scheduled deliveries for every active subscription over the horizon."""
    start = today()
    end = start + timedelta(days=days) if days else materializer_service.horizon_end(start)
    for oid in _org_ids(org_id):
        result = materializer_service.materialize_all(oid, start, end)
        click.echo(f"PASS Org {oid} {start}..{end}: {result.to_dict()}")


@jobs_group.command('plan-routes')
@click.option('--org-id', type=int, help='Organization ID (all active orgs if omitted)')
@click.option('--date', 'route_date', help='Route date YYYY-MM-DD (defaults to tomorrow)')
@click.option('--agent-id', 'agent_ids', type=int, multiple=True, help='Limit to these agents')
@with_appcontext
def plan_routes_cli(org_id, route_date, agent_ids):
    """Assign due deliveries and orders to agents and sequence the stops."""
    route_date = _date_option(route_date, today() + timedelta(days=1))
    for oid in _org_ids(org_id):
        result = route_planner_service.plan_routes(oid, route_date, list(agent_ids) or None)
        summary = result.to_dict()
        click.echo(
            f"PASS Org {oid} {route_date}: {len(summary['routes'])} routes, "
            f"{summary['assigned_count']} assigned, {summary['unassigned_count']} unassigned"
        )
        for item in summary['unassigned']:
            click.echo(f"WARN  Unassigned {item}")


@jobs_group.command('invoices')
@click.option('--cycle', type=click.Choice(['weekly', 'monthly']), required=True)
@click.option('--org-id', type=int, help='Organization ID (all active orgs if omitted)')
@click.option('--as-of', help='Run date YYYY-MM-DD (defaults to today)')
@with_appcontext
def invoices_cli(cycle, org_id, as_of):
    """Invoice postpaid customers for the period that closed before --as-of."""
    as_of = _date_option(as_of, today())
    failed = 0
    for oid in _org_ids(org_id):
        result = billing_service.generate_cycle_invoices(oid, cycle, as_of)
        failed += result['failed']
        click.echo(
            f"PASS Org {oid} {cycle} {result['period_start']}..{result['period_end']}: "
            f"{len(result['generated'])} generated, {result['empty']} empty, {result['failed']} failed"
        )
    if failed:
        raise click.ClickException(f"{failed} invoices failed; see logs")


@jobs_group.command('mark-overdue')
@click.option('--org-id', type=int, help='Organization ID (all orgs if omitted)')
@with_appcontext
def mark_overdue_cli(org_id):
    """Flag sent invoices past their due date."""
    count = billing_service.mark_overdue_invoices(org_id)
    click.echo(f"PASS Marked {count} invoices overdue")


@jobs_group.command('dispatch-events')
@click.option('--limit', type=int, default=500, show_default=True)
@with_appcontext
def dispatch_events_cli(limit):
    """Push pending domain events to customers and agents."""
    result = event_service.dispatch_pending_events(limit=limit)
    click.echo(f"PASS Dispatched {result['dispatched']} events ({result['failed']} failed)")


# =============================================================================
# BILLING
# =============================================================================

@click.group('billing')
def billing_group():
    """Billing integrity commands."""


@billing_group.command('verify-ledger')
@click.option('--org-id', type=int, help='Organization ID (all orgs if omitted)')
@with_appcontext
def verify_ledger_cli(org_id):
    """Recompute every running balance and report broken ledgers."""
    result = ledger_service.verify_all(org_id)
    if result['broken']:
        raise click.ClickException(
            f"{len(result['broken'])} of {result['checked']} ledgers broken: users {result['broken']}"
        )
    click.echo(f"PASS {result['checked']} ledgers verified")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(jobs_group)
    app.cli.add_command(billing_group)
