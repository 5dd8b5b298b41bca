from datetime import timedelta

from sqlalchemy.exc import OperationalError

from settlement.errors import ExternalDependencyError
from settlement.extensions import db
from settlement.models import Dispute, EscrowTimeout, Payment
from settlement.models.payments import (
    MOVEMENT_PAYOUT,
    PAYMENT_CONFIRMED_FINAL,
    PAYMENT_ESCROW,
    PAYMENT_REFUNDED,
    TIMEOUT_DONE,
    TIMEOUT_PENDING,
    TIMEOUT_SUPERSEDED,
    TIMEOUT_SUPPRESSED,
)
from settlement.services import escrow_service, escrow_timeout_service, settlement_service
from settlement.services.escrow_timeout_service import OUTCOME_RETRY_PENDING, run_due_timeouts

from conftest import ESCROW_T0, LOCK_AT, PAYMENT_AT, T0, TENANT, sign_as


DUE = ESCROW_T0 + timedelta(hours=48)


def _task(db_session, payment):
    return db_session.query(EscrowTimeout).filter_by(payment_id=payment.id).one()


def _payouts(payment):
    return [m for m in escrow_service.get_movements(payment.id) if m.movement_type == MOVEMENT_PAYOUT]


def test_nothing_fires_before_48_hours(db_session, escrow_payment):
    summary = run_due_timeouts(ESCROW_T0 + timedelta(hours=47, minutes=59))

    assert summary["due"] == 0
    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_ESCROW


def test_uncontested_escrow_auto_releases(db_session, fakes, escrow_payment):
    summary = run_due_timeouts(DUE)

    assert summary["due"] == 1
    assert summary[TIMEOUT_DONE] == 1

    payment = db_session.get(Payment, escrow_payment.id)
    assert payment.status == PAYMENT_CONFIRMED_FINAL
    assert payment.released_at == DUE
    task = _task(db_session, escrow_payment)
    assert task.status == TIMEOUT_DONE
    assert task.completed_at == DUE
    assert fakes.receipts.issued == [payment.reference]


def test_manual_release_supersedes_timeout(db_session, escrow_payment):
    escrow_service.release(escrow_payment.id, now=ESCROW_T0 + timedelta(hours=3))

    summary = run_due_timeouts(DUE)

    assert summary[TIMEOUT_SUPERSEDED] == 1
    assert _task(db_session, escrow_payment).status == TIMEOUT_SUPERSEDED
    assert len(_payouts(escrow_payment)) == 1


def test_refund_supersedes_timeout(db_session, escrow_payment):
    escrow_service.refund(escrow_payment.id, "Owner withdrew listing")

    run_due_timeouts(DUE)

    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_REFUNDED
    assert _task(db_session, escrow_payment).status == TIMEOUT_SUPERSEDED


def test_open_dispute_suppresses_auto_release(db_session, escrow_payment):
    db_session.add(Dispute(payment_id=escrow_payment.id, status="IN_MEDIATION"))
    db_session.commit()

    summary = run_due_timeouts(DUE)

    assert summary[TIMEOUT_SUPPRESSED] == 1
    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_ESCROW
    assert _task(db_session, escrow_payment).status == TIMEOUT_SUPPRESSED
    assert run_due_timeouts(DUE + timedelta(hours=1))["due"] == 0


def test_racing_manual_release_transfers_funds_once(db_session, monkeypatch, escrow_payment):
    real_release = escrow_service.release

    def manual_release_wins(payment_id, **kwargs):
        # Payee validates manually between the sweep's check and its release
        real_release(payment_id, now=DUE - timedelta(minutes=1))
        return real_release(payment_id, **kwargs)

    monkeypatch.setattr(escrow_service, "release", manual_release_wins)

    summary = run_due_timeouts(DUE)

    assert summary[TIMEOUT_SUPERSEDED] == 1
    assert summary[TIMEOUT_DONE] == 0
    assert len(_payouts(escrow_payment)) == 1
    assert db_session.get(Payment, escrow_payment.id).released_at == DUE - timedelta(minutes=1)


def test_firing_failures_retry_then_alert_without_dropping(db_session, fakes, monkeypatch, caplog, escrow_payment):
    calls = []

    def broken_release(payment_id, **kwargs):
        calls.append(payment_id)
        raise ExternalDependencyError("ledger database unavailable")

    monkeypatch.setattr(escrow_service, "release", broken_release)

    summary = run_due_timeouts(DUE)

    assert summary[OUTCOME_RETRY_PENDING] == 1
    assert len(calls) == 3
    task = _task(db_session, escrow_payment)
    assert task.status == TIMEOUT_PENDING
    assert task.attempts == 3
    assert "ledger database unavailable" in task.last_error
    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_ESCROW
    assert any(record.levelname == "CRITICAL" for record in caplog.records)
    assert fakes.notifier.events("escrow.release_stuck")[0][0] == "ops"

    monkeypatch.undo()
    summary = run_due_timeouts(DUE + timedelta(minutes=5))

    assert summary[TIMEOUT_DONE] == 1
    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_CONFIRMED_FINAL


def test_transient_failure_is_retried_within_the_sweep(db_session, monkeypatch, escrow_payment):
    real_release = escrow_service.release
    failures = []

    def flaky_release(payment_id, **kwargs):
        if not failures:
            failures.append(1)
            raise ExternalDependencyError("lock wait timeout")
        return real_release(payment_id, **kwargs)

    monkeypatch.setattr(escrow_service, "release", flaky_release)

    outcome = escrow_timeout_service.fire_timeout(_task(db_session, escrow_payment).id, now=DUE)

    assert outcome == TIMEOUT_DONE
    assert len(_payouts(escrow_payment)) == 1


def _second_escrow_payment(fakes):
    contract = settlement_service.register_contract(
        owner_id="owner-2",
        counterparty_id=TENANT,
        transaction_type="rental_long",
        base_amount=1_800_000,
        deposit_amount=3_600_000,
        now=T0 - timedelta(days=1),
    )
    sign_as(fakes, contract.reference, "owner-2")
    sign_as(fakes, contract.reference, TENANT)
    settlement_service.finalize_contract(contract.reference, now=LOCK_AT)
    payment = settlement_service.initiate_payment(contract.reference, TENANT, now=PAYMENT_AT)
    settlement_service.on_gateway_webhook(
        "ORANGE_MONEY",
        {"order_id": payment.reference, "status": "SUCCESSFUL", "txnid": "OM-0002"},
        now=ESCROW_T0,
    )
    return settlement_service.get_payment(payment.reference)


def test_unrecordable_failure_still_alerts_and_sweep_continues(db_session, fakes, monkeypatch, caplog, escrow_payment):
    other = _second_escrow_payment(fakes)
    stuck_task_id = _task(db_session, escrow_payment).id
    real_release = escrow_service.release
    real_commit = db.session.commit

    def release(payment_id, **kwargs):
        if payment_id == escrow_payment.id:
            raise ExternalDependencyError("ledger database unavailable")
        return real_release(payment_id, **kwargs)

    def commit():
        # Writing the failure bookkeeping for the stuck task hits a dead connection
        if any(isinstance(obj, EscrowTimeout) and obj.id == stuck_task_id for obj in db.session.dirty):
            raise OperationalError("UPDATE escrow_timeouts", {}, Exception("database is locked"))
        return real_commit()

    monkeypatch.setattr(escrow_service, "release", release)
    monkeypatch.setattr(db.session, "commit", commit)

    summary = run_due_timeouts(DUE)

    assert summary["due"] == 2
    assert summary[OUTCOME_RETRY_PENDING] == 1
    assert summary[TIMEOUT_DONE] == 1
    assert db_session.get(Payment, other.id).status == PAYMENT_CONFIRMED_FINAL
    assert db_session.get(Payment, escrow_payment.id).status == PAYMENT_ESCROW
    assert db_session.get(EscrowTimeout, stuck_task_id).status == TIMEOUT_PENDING
    assert any(record.levelname == "CRITICAL" for record in caplog.records)
    alert = fakes.notifier.events("escrow.release_stuck")[0][2]
    assert alert["payment_id"] == escrow_payment.id
    assert alert["attempts"] == 3
