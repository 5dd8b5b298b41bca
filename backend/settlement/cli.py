# Overview: Flask CLI command groups for bootstrap, escrow sweeps, and contract maintenance.

# backend/settlement/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent). Use "flask db upgrade" for migrated databases.
#
# Escrow (schedule "sweep" every few minutes):
# - python -m flask escrow sweep [--now 2026-01-01T00:00:00Z]
#   Fire due 48h auto-release tasks; re-validates each payment first.
# - python -m flask escrow status PAY-20260101-AB12C
#   Show the escrow clock for one payment.
# - python -m flask escrow retry-receipts
#   Regenerate receipts for released payments that never got one.
#
# Contracts (schedule "check-retraction" hourly, "verify-integrity --all" daily):
# - python -m flask contracts check-retraction [--dry-run]
#   Lock and archive contracts whose 48h retraction window closed; send reminders.
# - python -m flask contracts verify-integrity --contract CTR-2026-ABC123
# - python -m flask contracts verify-integrity --all
#   Recompute archive hashes; exit code 1 on any violation.
# - python -m flask contracts backup [--dry-run] [--force] [--now 2026-01-01T02:00:00Z]
#   Copy locked archives to backups/contracts/YYYY/MM/DD with a manifest (schedule daily).

import click
from flask.cli import with_appcontext

from .errors import SettlementError
from .extensions import db
from .services import escrow_service, escrow_timeout_service, signature_service
from .services.integrity_service import get_integrity_service
from .services.settlement_service import get_contract, get_payment
from .time_utils import parse_iso_datetime, utcnow


def _parse_now(value):
    if not value:
        return utcnow()
    try:
        return parse_iso_datetime(value)
    except ValueError as e:
        raise click.BadParameter(f"Invalid ISO-8601 datetime: {value}") from e


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema ready.")


@click.group('escrow')
def escrow_group():
    """Escrow sweeps and inspection."""


@escrow_group.command('sweep')
@click.option('--now', 'now_value', default=None, help='Override current time (ISO-8601, UTC)')
@with_appcontext
def sweep(now_value):
    """Fire every due escrow timeout."""
    now = _parse_now(now_value)
    summary = escrow_timeout_service.run_due_timeouts(now)

    click.echo(f"Due tasks: {summary['due']}")
    click.echo(f"  released:   {summary['DONE']}")
    click.echo(f"  superseded: {summary['SUPERSEDED']}")
    click.echo(f"  suppressed: {summary['SUPPRESSED']}")
    click.echo(f"  pending:    {summary[escrow_timeout_service.OUTCOME_RETRY_PENDING]}")

    if summary[escrow_timeout_service.OUTCOME_RETRY_PENDING]:
        click.echo("WARN Some releases could not be fired and stay pending for the next sweep.")


@escrow_group.command('status')
@click.argument('payment_ref')
@with_appcontext
def status(payment_ref):
    """Show escrow status for a payment reference."""
    try:
        payment = get_payment(payment_ref)
    except SettlementError as e:
        raise click.ClickException(e.message)

    info = escrow_service.get_status(payment.id)
    click.echo(f"Payment:   {info['payment_reference']}")
    click.echo(f"Status:    {info['status']}")
    if info['entered_escrow_at'] is None:
        click.echo("Escrow:    not entered")
        return
    click.echo(f"Entered:   {info['entered_escrow_at']}")
    click.echo(f"Expires:   {info['expires_at']}")
    click.echo(f"Elapsed:   {info['hours_elapsed']}h")
    click.echo(f"Remaining: {info['hours_remaining']}h")
    click.echo(f"Expired:   {'yes' if info['is_expired'] else 'no'}")


@escrow_group.command('retry-receipts')
@with_appcontext
def retry_receipts():
    """Retry receipt generation for released payments without one."""
    summary = escrow_service.retry_missing_receipts()
    click.echo(f"Receipts attempted: {summary['attempted']}, issued: {summary['issued']}, failed: {summary['failed']}")


@click.group('contracts')
def contracts_group():
    """Contract retraction and integrity maintenance."""


@contracts_group.command('check-retraction')
@click.option('--dry-run', is_flag=True, help='Report without making changes')
@with_appcontext
def check_retraction(dry_run):
    """Finalize contracts whose retraction period expired."""
    now = utcnow()
    summary = signature_service.finalize_expired_contracts(now, dry_run=dry_run)
    click.echo(f"Found {summary['found']} contract(s) with expired retraction period.")
    for reference in summary['references']:
        prefix = "[DRY RUN] Would finalize" if dry_run else "Checked"
        click.echo(f"  {prefix} {reference}")
    if not dry_run:
        click.echo(f"Finalized: {summary['finalized']}, Errors: {summary['errors']}")

    reminders = signature_service.remind_approaching_expiry(now, dry_run=dry_run)
    click.echo(f"Found {len(reminders)} contract(s) approaching retraction expiry.")
    for reminder in reminders:
        click.echo(f"  {reminder['contract_reference']}: {reminder['hours_remaining']} hours remaining")

    if summary['errors']:
        raise SystemExit(1)


@contracts_group.command('verify-integrity')
@click.option('--contract', 'contract_ref', default=None, help='Verify a single contract reference')
@click.option('--all', 'verify_all', is_flag=True, help='Verify every locked contract')
@with_appcontext
def verify_integrity(contract_ref, verify_all):
    """Recompute archive hashes and report violations."""
    if not contract_ref and not verify_all:
        raise click.UsageError("Pass --contract REF or --all")

    integrity = get_integrity_service()

    if contract_ref:
        try:
            contract = get_contract(contract_ref)
        except SettlementError as e:
            raise click.ClickException(e.message)
        report = integrity.verify(contract)
        if report.verified:
            click.echo(f"PASS {contract.reference}: integrity verified")
            return
        click.echo(f"FAIL {contract.reference}: {report.status} - {report.mismatch_detail}")
        raise SystemExit(1)

    summary = integrity.verify_all()
    click.echo(f"Checked: {summary['checked']}, valid: {summary['valid']}, violations: {len(summary['violations'])}")
    for violation in summary['violations']:
        click.echo(f"FAIL {violation['contract_reference']}: {violation['status']} - {violation['detail']}")
    if summary['violations']:
        raise SystemExit(1)


@contracts_group.command('backup')
@click.option('--dry-run', is_flag=True, help='Report without copying anything')
@click.option('--force', is_flag=True, help='Copy again even if already backed up today')
@click.option('--now', 'now_value', default=None, help='Override current time (ISO-8601, UTC)')
@with_appcontext
def backup(dry_run, force, now_value):
    """Copy locked contract archives to the dated backup area."""
    now = _parse_now(now_value)
    summary = get_integrity_service().backup_archives(now=now, dry_run=dry_run, force=force)

    click.echo(f"Found {summary['found']} locked contract(s).")
    for reference in summary['references']:
        prefix = "[DRY RUN] Would back up" if dry_run else "Backed up"
        click.echo(f"  {prefix} {reference}")
    click.echo(f"Backed up: {summary['backed_up']}, Skipped: {summary['skipped']}, Failed: {summary['failed']}")
    if summary['manifest_path']:
        click.echo(f"PASS Manifest written: {summary['manifest_path']}")

    if summary['failed']:
        click.echo("FAIL Some contracts could not be backed up.")
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(escrow_group)
    app.cli.add_command(contracts_group)
