# Overview: Service-layer operations for escrow; owns every payment state transition.

"""
Escrow Ledger

WHY: Funds move between two untrusted parties. The platform holds them for at
most 48 hours after confirmation, then pays the payee (manually or by timeout)
or refunds the payer. The platform commission is retained in every outcome.

STATE MACHINE (forward-only):
    INITIATED -> CONFIRMED -> ESCROW -> CONFIRMED_FINAL
                     |          |  \-> REFUNDED
                     |          \---> DISPUTED -> CONFIRMED_FINAL | REFUNDED (mediator)
                     \-> CONFIRMED_FINAL (DIRECT payments)
    INITIATED -> FAILED

CONCURRENCY:
- Every mutation is read-modify-write under SELECT ... FOR UPDATE on the
  single payment row. State is re-read inside the lock (populate_existing).
- Transition, money movements and log entry commit in one transaction.
- Expected races (second release, webhook replay) return an unchanged result
  instead of raising.

SIDE EFFECTS:
- Receipt generation and notifications run after commit. Failures are logged
  and never roll back or replay the financial transition.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from ..errors import EscrowBlockedByDispute, InvalidStateTransition, LockTimeout, ValidationError
from ..extensions import db
from ..models import EscrowMovement, Payment
from ..models.payments import (
    MOVEMENT_COMMISSION_RETAINED,
    MOVEMENT_HOLD,
    MOVEMENT_PAYOUT,
    MOVEMENT_REFUND,
    PAYMENT_CONFIRMED,
    PAYMENT_CONFIRMED_FINAL,
    PAYMENT_DISPUTED,
    PAYMENT_ESCROW,
    PAYMENT_FAILED,
    PAYMENT_INITIATED,
    PAYMENT_REFUNDED,
)
from settlement.time_utils import to_utc_z, utcnow
from .audit_service import ENTITY_PAYMENT, append_transition
from .collaborators import get_collaborators, notify_safely
from .concurrency import lock_for_update, run_locked
from .escrow_timeout_service import schedule_timeout


ESCROW_HOLD_HOURS = 48
ESCROW_HOLD = timedelta(hours=ESCROW_HOLD_HOURS)

RESOLVE_RELEASE = "release"
RESOLVE_REFUND = "refund"


@dataclass
class SettlementResult:
    """Outcome of a ledger call; changed=False means the work was already done."""
    payment: Payment
    changed: bool

    @property
    def status(self) -> str:
        return self.payment.status

    @property
    def already_done(self) -> bool:
        return not self.changed

    def to_dict(self) -> dict:
        return {
            "payment": self.payment.to_dict(),
            "status": self.status,
            "changed": self.changed,
        }


# =============================================================================
# HELPERS
# =============================================================================

def _lock_payment(payment_id: int) -> Payment:
    payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
    if payment is None:
        raise ValidationError("Payment not found", payment_id=payment_id)
    return payment


def _transition(payment: Payment, to_state: str, event_type: str, now: datetime, *, actor_id=None, note=None, payload=None):
    from_state = payment.status
    payment.status = to_state
    append_transition(
        entity_type=ENTITY_PAYMENT,
        entity_id=payment.id,
        event_type=event_type,
        from_state=from_state,
        to_state=to_state,
        actor_id=actor_id,
        occurred_at=now,
        note=note,
        payload=payload,
    )


def _movement(payment: Payment, movement_type: str, amount: int, party_id: str | None, now: datetime, *, settles=None, note=None):
    db.session.add(EscrowMovement(
        payment_id=payment.id,
        movement_type=movement_type,
        amount=amount,
        party_id=party_id,
        settles=settles,
        occurred_at=now,
        note=note,
    ))


def _invalid(payment: Payment, action: str) -> InvalidStateTransition:
    return InvalidStateTransition(
        f"Cannot {action} payment in state {payment.status}",
        payment_reference=payment.reference,
        status=payment.status,
    )


def _apply_release(payment: Payment, now: datetime, *, actor_id=None, note=None) -> None:
    """Payee receives rent + deposit; platform keeps the fee."""
    payment.released_at = now
    payment.payee_amount = payment.escrow_amount
    payment.retained_commission = payment.platform_fee
    _movement(payment, MOVEMENT_PAYOUT, payment.escrow_amount, payment.payee_id, now, settles=True, note=note)
    _movement(payment, MOVEMENT_COMMISSION_RETAINED, payment.platform_fee, None, now)
    _transition(
        payment,
        PAYMENT_CONFIRMED_FINAL,
        "payment.released",
        now,
        actor_id=actor_id,
        note=note,
        payload={"payee_amount": payment.payee_amount, "retained_commission": payment.retained_commission},
    )


def _apply_refund(payment: Payment, now: datetime, reason: str, *, actor_id=None) -> None:
    """Payer gets rent + deposit back; the fee is never refunded."""
    payment.refunded_at = now
    payment.refund_amount = payment.escrow_amount
    payment.retained_commission = payment.platform_fee
    payment.refund_reason = reason
    _movement(payment, MOVEMENT_REFUND, payment.escrow_amount, payment.payer_id, now, settles=True, note=reason)
    _movement(payment, MOVEMENT_COMMISSION_RETAINED, payment.platform_fee, None, now)
    _transition(
        payment,
        PAYMENT_REFUNDED,
        "payment.refunded",
        now,
        actor_id=actor_id,
        note=reason,
        payload={"refund_amount": payment.refund_amount, "retained_commission": payment.retained_commission},
    )


def _notify_parties(payment: Payment, event_type: str, extra: dict | None = None) -> None:
    payload = {
        "payment_reference": payment.reference,
        "status": payment.status,
        **(extra or {}),
    }
    notify_safely(payment.payer_id, event_type, payload)
    notify_safely(payment.payee_id, event_type, payload)


# =============================================================================
# GATEWAY-DRIVEN TRANSITIONS
# =============================================================================

def confirm(
    payment_id: int,
    *,
    gateway: str | None = None,
    transaction_id: str | None = None,
    now: datetime | None = None,
) -> SettlementResult:
    """
    INITIATED -> CONFIRMED after a successful gateway outcome.

    Any other state is returned unchanged (webhook replays).
    """
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status != PAYMENT_INITIATED:
            return SettlementResult(payment, False)

        payment.confirmed_at = now
        payment.webhook_received_at = now
        payment.gateway = gateway
        payment.gateway_transaction_id = transaction_id
        _transition(
            payment,
            PAYMENT_CONFIRMED,
            "payment.confirmed",
            now,
            payload={"gateway": gateway, "transaction_id": transaction_id},
        )
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info("Payment %s confirmed by %s", result.payment.reference, gateway)
    return result


def fail(
    payment_id: int,
    *,
    gateway: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> SettlementResult:
    """INITIATED -> FAILED (terminal). A new payment attempt must be created."""
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status != PAYMENT_INITIATED:
            return SettlementResult(payment, False)

        payment.failed_at = now
        payment.webhook_received_at = now
        payment.gateway = gateway
        payment.failure_reason = (reason or "Gateway reported failure")[:255]
        _transition(payment, PAYMENT_FAILED, "payment.failed", now, note=payment.failure_reason)
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info("Payment %s failed: %s", result.payment.reference, result.payment.failure_reason)
        notify_safely(result.payment.payer_id, "payment.failed", {
            "payment_reference": result.payment.reference,
            "reason": result.payment.failure_reason,
        })
    return result


def finalize_direct(payment_id: int, *, now: datetime | None = None) -> SettlementResult:
    """CONFIRMED -> CONFIRMED_FINAL for payments that are not escrow-bound."""
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status == PAYMENT_CONFIRMED_FINAL:
            return SettlementResult(payment, False)
        if payment.status != PAYMENT_CONFIRMED or payment.is_escrow_bound:
            raise _invalid(payment, "finalize directly")

        _apply_release(payment, now, note="Direct settlement")
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        _after_release(result.payment, now)
    return result


# =============================================================================
# ESCROW OPERATIONS
# =============================================================================

def hold(payment_id: int, *, now: datetime | None = None, actor_id: str | None = None) -> SettlementResult:
    """
    CONFIRMED -> ESCROW and schedule the 48h auto-release in the same transaction.

    Already ESCROW: no-op. Any other state: InvalidStateTransition.
    """
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status == PAYMENT_ESCROW:
            return SettlementResult(payment, False)
        if payment.status != PAYMENT_CONFIRMED:
            raise _invalid(payment, "hold")
        if not payment.is_escrow_bound:
            raise InvalidStateTransition(
                "Direct payments never enter escrow",
                payment_reference=payment.reference,
            )

        payment.entered_escrow_at = now
        _movement(payment, MOVEMENT_HOLD, payment.total_amount, payment.payer_id, now)
        schedule_timeout(payment, now + ESCROW_HOLD)
        _transition(
            payment,
            PAYMENT_ESCROW,
            "payment.held",
            now,
            actor_id=actor_id,
            payload={"expires_at": to_utc_z(now + ESCROW_HOLD)},
        )
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info("Payment %s held in escrow until %s", result.payment.reference, now + ESCROW_HOLD)
        _notify_parties(result.payment, "escrow.held", {"expires_at": to_utc_z(now + ESCROW_HOLD)})
    return result


def release(
    payment_id: int,
    *,
    now: datetime | None = None,
    actor_id: str | None = None,
    note: str | None = None,
) -> SettlementResult:
    """
    ESCROW -> CONFIRMED_FINAL: pay rent + deposit to the payee, retain the fee.

    Already CONFIRMED_FINAL: no-op returning the final state.

    Raises:
        EscrowBlockedByDispute: an open dispute references the payment
        InvalidStateTransition: payment not in escrow
    """
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status == PAYMENT_CONFIRMED_FINAL:
            return SettlementResult(payment, False)
        if payment.status != PAYMENT_ESCROW:
            raise _invalid(payment, "release")
        if get_collaborators().disputes.has_open_dispute(payment.id):
            raise EscrowBlockedByDispute(
                "An open dispute blocks release of this payment",
                payment_reference=payment.reference,
            )

        _apply_release(payment, now, actor_id=actor_id, note=note)
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info(
            "Payment %s released: %s to payee %s, %s commission retained",
            result.payment.reference,
            result.payment.payee_amount,
            result.payment.payee_id,
            result.payment.retained_commission,
        )
        _after_release(result.payment, now)
    return result


def refund(
    payment_id: int,
    reason: str,
    *,
    now: datetime | None = None,
    actor_id: str | None = None,
) -> SettlementResult:
    """
    ESCROW -> REFUNDED: rent + deposit back to the payer, fee retained.

    Already REFUNDED: no-op.
    """
    if not reason or not reason.strip():
        raise ValidationError("Refund reason is required")
    reason = reason.strip()[:255]
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status == PAYMENT_REFUNDED:
            return SettlementResult(payment, False)
        if payment.status != PAYMENT_ESCROW:
            raise _invalid(payment, "refund")

        _apply_refund(payment, now, reason, actor_id=actor_id)
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info(
            "Payment %s refunded: %s to payer %s, %s commission retained",
            result.payment.reference,
            result.payment.refund_amount,
            result.payment.payer_id,
            result.payment.retained_commission,
        )
        _notify_parties(result.payment, "escrow.refunded", {"refund_amount": result.payment.refund_amount})
    return result


# =============================================================================
# DISPUTES
# =============================================================================

def mark_disputed(
    payment_id: int,
    note: str | None = None,
    *,
    now: datetime | None = None,
    actor_id: str | None = None,
) -> SettlementResult:
    """ESCROW -> DISPUTED. Funds stay with the platform until a mediator resolves."""
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status == PAYMENT_DISPUTED:
            return SettlementResult(payment, False)
        if payment.status != PAYMENT_ESCROW:
            raise _invalid(payment, "dispute")

        payment.disputed_at = now
        _transition(payment, PAYMENT_DISPUTED, "payment.disputed", now, actor_id=actor_id, note=note)
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info("Payment %s disputed", result.payment.reference)
        _notify_parties(result.payment, "escrow.disputed")
    return result


def resolve_dispute(
    payment_id: int,
    outcome: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    actor_id: str | None = None,
) -> SettlementResult:
    """
    Mediator's explicit settlement: DISPUTED -> CONFIRMED_FINAL or REFUNDED.

    Same money rules as release/refund. A payment already in the requested
    final state is returned unchanged.
    """
    if outcome not in (RESOLVE_RELEASE, RESOLVE_REFUND):
        raise ValidationError(
            f"Dispute outcome must be '{RESOLVE_RELEASE}' or '{RESOLVE_REFUND}'",
            outcome=outcome,
        )
    target = PAYMENT_CONFIRMED_FINAL if outcome == RESOLVE_RELEASE else PAYMENT_REFUNDED
    note = (reason or f"Dispute resolved: {outcome}").strip()[:255]
    now = now or utcnow()

    def _op():
        payment = _lock_payment(payment_id)
        if payment.status == target:
            return SettlementResult(payment, False)
        if payment.status != PAYMENT_DISPUTED:
            raise _invalid(payment, f"resolve dispute ({outcome}) for")

        if outcome == RESOLVE_RELEASE:
            _apply_release(payment, now, actor_id=actor_id, note=note)
        else:
            _apply_refund(payment, now, note, actor_id=actor_id)
        db.session.commit()
        return SettlementResult(payment, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info("Dispute on payment %s resolved: %s", result.payment.reference, outcome)
        if outcome == RESOLVE_RELEASE:
            _after_release(result.payment, now)
        else:
            _notify_parties(result.payment, "escrow.refunded", {"refund_amount": result.payment.refund_amount})
    return result


# =============================================================================
# RECEIPTS (AFTER COMMIT)
# =============================================================================

def _after_release(payment: Payment, now: datetime) -> None:
    issue_receipt(payment.id, now=now)
    _notify_parties(payment, "escrow.released", {"payee_amount": payment.payee_amount})


def issue_receipt(payment_id: int, *, now: datetime | None = None) -> bool:
    """
    Generate the quittance for a settled payment.

    Returns False (and logs) when the generator fails; the payment stays
    CONFIRMED_FINAL and retry_missing_receipts() picks it up later.
    """
    now = now or utcnow()
    payment = db.session.get(Payment, payment_id)
    if payment is None or payment.status != PAYMENT_CONFIRMED_FINAL or payment.receipt_issued_at is not None:
        return False

    try:
        receipt_reference = get_collaborators().receipts.generate(payment)
    except Exception:
        current_app.logger.warning("Receipt generation failed for payment %s", payment.reference, exc_info=True)
        return False

    def _record():
        locked = _lock_payment(payment_id)
        if locked.receipt_issued_at is None:
            locked.receipt_issued_at = now
            locked.receipt_reference = receipt_reference
            db.session.commit()
        return locked

    try:
        run_locked(_record)
    except LockTimeout:
        current_app.logger.warning("Receipt %s for payment %s not recorded (lock timeout)", receipt_reference, payment.reference)
        return False
    return True


def retry_missing_receipts(*, now: datetime | None = None) -> dict:
    """Retry receipts for released payments that never got one."""
    payment_ids = [
        row.id
        for row in db.session.query(Payment.id).filter(
            Payment.status == PAYMENT_CONFIRMED_FINAL,
            Payment.receipt_issued_at.is_(None),
        ).order_by(Payment.id).all()
    ]

    issued = 0
    for payment_id in payment_ids:
        if issue_receipt(payment_id, now=now):
            issued += 1

    return {"attempted": len(payment_ids), "issued": issued, "failed": len(payment_ids) - issued}


# =============================================================================
# QUERIES
# =============================================================================

def get_status(payment_id: int, *, now: datetime | None = None) -> dict:
    """
    Escrow clock for one payment.

    hours_remaining is whole hours, floored, never negative.
    """
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise ValidationError("Payment not found", payment_id=payment_id)

    status = {
        "payment_reference": payment.reference,
        "status": payment.status,
        "in_escrow": payment.status == PAYMENT_ESCROW,
        "entered_escrow_at": to_utc_z(payment.entered_escrow_at),
        "expires_at": None,
        "hours_elapsed": None,
        "hours_remaining": None,
        "is_expired": False,
    }
    if payment.entered_escrow_at is None:
        return status

    now = now or utcnow()
    elapsed = now - payment.entered_escrow_at
    remaining = ESCROW_HOLD - elapsed
    hours_elapsed = elapsed.total_seconds() / 3600

    status.update({
        "expires_at": to_utc_z(payment.entered_escrow_at + ESCROW_HOLD),
        "hours_elapsed": round(hours_elapsed, 2),
        "hours_remaining": max(0, math.floor(remaining.total_seconds() / 3600)),
        "is_expired": elapsed >= ESCROW_HOLD,
    })
    return status


def payments_in_escrow() -> list[Payment]:
    """Payments currently held, oldest first."""
    return db.session.query(Payment).filter(
        Payment.status == PAYMENT_ESCROW,
    ).order_by(Payment.entered_escrow_at, Payment.id).all()


def get_movements(payment_id: int) -> list[EscrowMovement]:
    return db.session.query(EscrowMovement).filter_by(
        payment_id=payment_id,
    ).order_by(EscrowMovement.id).all()
