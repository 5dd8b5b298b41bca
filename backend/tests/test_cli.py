"""CLI command tests (run inside the session app context)."""

from settlement.models import Contract, Payment
from settlement.models.contracts import CONTRACT_LOCKED, CONTRACT_RETRACTION_WINDOW
from settlement.models.payments import PAYMENT_CONFIRMED_FINAL, PAYMENT_ESCROW


def _run(app, *args):
    return app.test_cli_runner().invoke(args=list(args))


def test_init_db_is_idempotent(app, db_session):
    result = _run(app, "system", "init-db")

    assert result.exit_code == 0
    assert "PASS" in result.output


def test_escrow_sweep_releases_due_payment(app, db_session, escrow_payment):
    # escrow_payment entered escrow at 2026-03-04 11:00 UTC
    early = _run(app, "escrow", "sweep", "--now", "2026-03-06T10:59:00Z")
    assert "Due tasks: 0" in early.output

    result = _run(app, "escrow", "sweep", "--now", "2026-03-06T11:00:00Z")

    assert result.exit_code == 0
    assert "released:   1" in result.output
    db_session.expire_all()
    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_CONFIRMED_FINAL


def test_escrow_sweep_rejects_bad_timestamp(app, db_session):
    result = _run(app, "escrow", "sweep", "--now", "yesterday")

    assert result.exit_code != 0
    assert "Invalid ISO-8601 datetime" in result.output


def test_escrow_status_shows_clock(app, db_session, escrow_payment):
    result = _run(app, "escrow", "status", escrow_payment.reference)

    assert result.exit_code == 0
    assert f"Status:    {PAYMENT_ESCROW}" in result.output
    assert "Expires:   2026-03-06T11:00:00Z" in result.output


def test_escrow_status_unknown_reference(app, db_session):
    result = _run(app, "escrow", "status", "PAY-20260101-NOPE0")

    assert result.exit_code == 1
    assert "Payment not found" in result.output


def test_retry_receipts_reports_counts(app, db_session, fakes, escrow_payment):
    fakes.receipts.fail = True
    _run(app, "escrow", "sweep", "--now", "2026-03-06T11:00:00Z")
    fakes.receipts.fail = False

    result = _run(app, "escrow", "retry-receipts")

    assert result.exit_code == 0
    assert "Receipts attempted: 1, issued: 1, failed: 0" in result.output


def test_check_retraction_dry_run_changes_nothing(app, db_session, signed_contract):
    result = _run(app, "contracts", "check-retraction", "--dry-run")

    assert result.exit_code == 0
    assert f"[DRY RUN] Would finalize {signed_contract.reference}" in result.output
    db_session.expire_all()
    assert db_session.get(Contract, signed_contract.id).status == CONTRACT_RETRACTION_WINDOW


def test_check_retraction_locks_expired_contracts(app, db_session, signed_contract):
    result = _run(app, "contracts", "check-retraction")

    assert result.exit_code == 0
    assert "Finalized: 1, Errors: 0" in result.output
    db_session.expire_all()
    assert db_session.get(Contract, signed_contract.id).status == CONTRACT_LOCKED


def test_check_retraction_exits_nonzero_on_storage_failure(app, db_session, fakes, signed_contract):
    fakes.storage.fail_writes = True

    result = _run(app, "contracts", "check-retraction")

    assert result.exit_code == 1
    assert "Finalized: 0, Errors: 1" in result.output


def test_verify_integrity_requires_a_target(app, db_session):
    result = _run(app, "contracts", "verify-integrity")

    assert result.exit_code == 2
    assert "Pass --contract REF or --all" in result.output


def test_verify_integrity_single_contract(app, db_session, locked_contract):
    result = _run(app, "contracts", "verify-integrity", "--contract", locked_contract.reference)

    assert result.exit_code == 0
    assert f"PASS {locked_contract.reference}" in result.output


def test_verify_integrity_all_flags_tampering(app, db_session, fakes, locked_contract):
    fakes.storage.files[locked_contract.archive_path] = b"overwritten"

    result = _run(app, "contracts", "verify-integrity", "--all")

    assert result.exit_code == 1
    assert "violations: 1" in result.output
    assert f"FAIL {locked_contract.reference}: TAMPERED" in result.output


def test_backup_dry_run_lists_contracts(app, db_session, fakes, locked_contract):
    result = _run(app, "contracts", "backup", "--dry-run", "--now", "2026-03-05T02:00:00Z")

    assert result.exit_code == 0
    assert f"[DRY RUN] Would back up {locked_contract.reference}" in result.output
    assert not any(path.startswith("backups/") for path in fakes.storage.files)


def test_backup_writes_copies_and_manifest(app, db_session, fakes, locked_contract):
    result = _run(app, "contracts", "backup", "--now", "2026-03-05T02:00:00Z")

    assert result.exit_code == 0
    assert "Backed up: 1, Skipped: 0, Failed: 0" in result.output
    assert "PASS Manifest written: backups/contracts/2026/03/05/manifest.json" in result.output
    assert f"backups/contracts/2026/03/05/{locked_contract.reference}.enc" in fakes.storage.files


def test_backup_exits_nonzero_when_copy_fails(app, db_session, fakes, locked_contract):
    fakes.storage.fail_writes = True

    result = _run(app, "contracts", "backup", "--now", "2026-03-05T02:00:00Z")

    assert result.exit_code == 1
    assert "Failed: 1" in result.output
