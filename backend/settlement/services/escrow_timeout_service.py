# Overview: Service-layer operations for escrow timeouts; durable 48h auto-release sweep.

"""
Escrow Timeout Scheduler

WHY: Silence is acceptance. If nobody contests within 48 hours of entering
escrow, the funds go to the payee. The deadline must survive restarts, so it
is a row (escrow_timeouts) rather than an in-memory timer.

SWEEP RULES (state is always re-validated, never trusted):
- payment no longer ESCROW        -> task SUPERSEDED, nothing else happens
- open dispute on the payment     -> task SUPPRESSED, payment stays ESCROW
- otherwise                       -> Escrow Ledger release(), task DONE

Firing failures are retried with exponential backoff (TIMEOUT_FIRE_ATTEMPTS).
When retries run out the task stays PENDING for the next sweep and an
operational alert is raised. A pending release is never dropped, even when
the failure itself cannot be recorded; the sweep moves on to the next task.
"""

from __future__ import annotations

import time
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import EscrowBlockedByDispute
from ..extensions import db
from ..models import EscrowTimeout, Payment
from ..models.payments import (
    PAYMENT_ESCROW,
    TIMEOUT_DONE,
    TIMEOUT_PENDING,
    TIMEOUT_SUPERSEDED,
    TIMEOUT_SUPPRESSED,
)
from settlement.time_utils import to_utc_z, utcnow
from .collaborators import get_collaborators, notify_safely
from .concurrency import lock_for_update, run_with_retry


OUTCOME_RETRY_PENDING = "RETRY_PENDING"


def schedule_timeout(payment: Payment, fire_at: datetime) -> EscrowTimeout:
    """
    Create the deferred check for a payment entering escrow.

    Caller holds the payment lock and commits. One task per payment.
    """
    task = db.session.query(EscrowTimeout).filter_by(payment_id=payment.id).first()
    if task is not None:
        return task

    task = EscrowTimeout(
        payment_id=payment.id,
        fire_at=fire_at,
        status=TIMEOUT_PENDING,
        attempts=0,
    )
    db.session.add(task)
    db.session.flush()
    return task


def _close_task(task_id: int, status: str, now: datetime, *, error: str | None = None) -> None:
    def _op():
        task = lock_for_update(db.session.query(EscrowTimeout).filter_by(id=task_id)).first()
        task.attempts = (task.attempts or 0) + 1
        task.last_attempt_at = now
        task.last_error = error
        if task.status == TIMEOUT_PENDING:
            task.status = status
            task.completed_at = now
        db.session.commit()

    run_with_retry(_op)


def _fire_once(task_id: int, now: datetime) -> str:
    from . import escrow_service

    task = db.session.get(EscrowTimeout, task_id)
    if task is None or task.status != TIMEOUT_PENDING:
        return task.status if task is not None else TIMEOUT_SUPERSEDED

    payment = db.session.query(Payment).populate_existing().filter_by(id=task.payment_id).first()

    if payment is None or payment.status != PAYMENT_ESCROW:
        _close_task(task_id, TIMEOUT_SUPERSEDED, now)
        return TIMEOUT_SUPERSEDED

    if get_collaborators().disputes.has_open_dispute(payment.id):
        _close_task(task_id, TIMEOUT_SUPPRESSED, now)
        current_app.logger.info("Auto-release of payment %s suppressed by open dispute", payment.reference)
        return TIMEOUT_SUPPRESSED

    try:
        result = escrow_service.release(payment.id, now=now, note="Automatic release after 48h escrow")
    except EscrowBlockedByDispute:
        _close_task(task_id, TIMEOUT_SUPPRESSED, now)
        return TIMEOUT_SUPPRESSED

    if not result.changed:
        _close_task(task_id, TIMEOUT_SUPERSEDED, now)
        return TIMEOUT_SUPERSEDED

    _close_task(task_id, TIMEOUT_DONE, now)
    current_app.logger.info("Payment %s auto-released after escrow timeout", payment.reference)
    return TIMEOUT_DONE


def _record_failure(task_id: int, attempts_made: int, error: str, now: datetime) -> int | None:
    """Persist the failed attempts; returns the new attempt count, or None when the write failed."""
    try:
        task = db.session.get(EscrowTimeout, task_id)
        task.attempts = (task.attempts or 0) + attempts_made
        task.last_attempt_at = now
        task.last_error = error[:2000]
        db.session.commit()
        return task.attempts
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Could not record firing failure for escrow timeout %s: %s", task_id, exc)
        return None


def fire_timeout(
    task_id: int,
    *,
    now: datetime | None = None,
    attempts: int | None = None,
    backoff_base: float | None = None,
) -> str:
    """
    Fire one due task with bounded retries.

    Returns the task outcome (DONE, SUPERSEDED, SUPPRESSED) or RETRY_PENDING
    when every attempt failed.
    """
    now = now or utcnow()
    if attempts is None:
        attempts = current_app.config.get("TIMEOUT_FIRE_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("TIMEOUT_FIRE_BACKOFF", 0.5)

    # Alert facts are read up front; the task row may be unreadable after a failure
    task = db.session.get(EscrowTimeout, task_id)
    payment_id, fire_at, prior_attempts = task.payment_id, task.fire_at, task.attempts or 0

    last_error = None
    for attempt in range(attempts):
        try:
            return _fire_once(task_id, now)
        except Exception as exc:
            db.session.rollback()
            last_error = f"{type(exc).__name__}: {exc}"
            current_app.logger.warning(
                "Escrow timeout %s firing failed (attempt %s/%s): %s", task_id, attempt + 1, attempts, last_error
            )
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))

    recorded = _record_failure(task_id, attempts, last_error or "unknown error", now)
    total_attempts = recorded if recorded is not None else prior_attempts + attempts
    current_app.logger.critical(
        "Escrow auto-release for payment %s still pending after %s attempts: %s",
        payment_id,
        total_attempts,
        last_error,
    )
    notify_safely(current_app.config.get("OPS_ALERT_RECIPIENT"), "escrow.release_stuck", {
        "payment_id": payment_id,
        "attempts": total_attempts,
        "fire_at": to_utc_z(fire_at),
        "last_error": last_error,
    })
    return OUTCOME_RETRY_PENDING


def due_timeouts(now: datetime | None = None) -> list[EscrowTimeout]:
    now = now or utcnow()
    return db.session.query(EscrowTimeout).filter(
        EscrowTimeout.status == TIMEOUT_PENDING,
        EscrowTimeout.fire_at <= now,
    ).order_by(EscrowTimeout.fire_at, EscrowTimeout.id).all()


def run_due_timeouts(now: datetime | None = None) -> dict:
    """
    Recurring sweep entry point (flask escrow sweep).

    Returns counts per outcome.
    """
    now = now or utcnow()
    task_ids = [task.id for task in due_timeouts(now)]

    summary = {
        "due": len(task_ids),
        TIMEOUT_DONE: 0,
        TIMEOUT_SUPERSEDED: 0,
        TIMEOUT_SUPPRESSED: 0,
        OUTCOME_RETRY_PENDING: 0,
    }
    for task_id in task_ids:
        outcome = fire_timeout(task_id, now=now)
        summary[outcome] = summary.get(outcome, 0) + 1

    if task_ids:
        current_app.logger.info("Escrow sweep at %s: %s", to_utc_z(now), summary)
    return summary
