# Overview: Service-layer operations for gateway webhooks; normalize outcome, drive the escrow ledger.

"""
Webhook Settlement Adapter

WHY: Mobile-money gateways report payment results asynchronously, each in its
own payload shape. This adapter turns a verified payload into one normalized
outcome and hands it to the Escrow Ledger.

ASSUMPTIONS:
- Payload authenticity was verified upstream (signature check is not done here).
- Gateways deliver at least once, so every replay must be a no-op.

DISPATCH:
- GATEWAY_MAPPERS maps a gateway name to its GatewayOutcomeMapper.
- Unknown gateways use FailSafeMapper, which always reports failure.

FLOW:
- success on INITIATED   -> CONFIRMED, then hold() (escrow) or finalize_direct()
- success on CONFIRMED   -> resume the hold()/finalize step
- failure on INITIATED   -> FAILED (terminal)
- anything else          -> no-op
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from flask import current_app

from ..errors import ValidationError
from ..extensions import db
from ..models import Payment
from ..models.payments import PAYMENT_CONFIRMED
from settlement.time_utils import utcnow
from . import escrow_service


OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

GATEWAY_ORANGE_MONEY = "ORANGE_MONEY"
GATEWAY_MTN_MOMO = "MTN_MOMO"


# =============================================================================
# OUTCOME MAPPERS
# =============================================================================

class GatewayOutcomeMapper(Protocol):
    def outcome(self, payload: dict) -> str: ...

    def payment_reference(self, payload: dict) -> str | None: ...

    def transaction_id(self, payload: dict) -> str | None: ...

    def failure_reason(self, payload: dict) -> str | None: ...


class _StatusFieldMapper:
    """Gateways that report a status string plus our payment reference."""

    success_statuses: tuple[str, ...] = ()
    reference_fields: tuple[str, ...] = ("reference",)
    transaction_fields: tuple[str, ...] = ()
    reason_fields: tuple[str, ...] = ()

    @staticmethod
    def _first(payload: dict, fields: tuple[str, ...]) -> str | None:
        for name in fields:
            value = payload.get(name)
            if value not in (None, ""):
                return str(value)
        return None

    def outcome(self, payload: dict) -> str:
        status = str(payload.get("status") or "").strip().upper()
        return OUTCOME_SUCCESS if status in self.success_statuses else OUTCOME_FAILURE

    def payment_reference(self, payload: dict) -> str | None:
        return self._first(payload, self.reference_fields)

    def transaction_id(self, payload: dict) -> str | None:
        return self._first(payload, self.transaction_fields)

    def failure_reason(self, payload: dict) -> str | None:
        if self.outcome(payload) == OUTCOME_SUCCESS:
            return None
        return self._first(payload, self.reason_fields) or f"Gateway status: {payload.get('status')}"


class OrangeMoneyMapper(_StatusFieldMapper):
    success_statuses = ("SUCCESSFUL",)
    reference_fields = ("order_id", "reference")
    transaction_fields = ("txnid", "transaction_id", "pay_token")
    reason_fields = ("message", "reason")


class MtnMomoMapper(_StatusFieldMapper):
    success_statuses = ("SUCCESSFUL",)
    reference_fields = ("externalId", "reference")
    transaction_fields = ("financialTransactionId", "referenceId")
    reason_fields = ("reason", "message")

    def failure_reason(self, payload: dict) -> str | None:
        if self.outcome(payload) == OUTCOME_SUCCESS:
            return None
        reason = payload.get("reason")
        # MTN sends {"code": ..., "message": ...} objects for reasons
        if isinstance(reason, dict):
            return reason.get("message") or reason.get("code") or "Gateway reported failure"
        return super().failure_reason(payload)


class FailSafeMapper(_StatusFieldMapper):
    """Unknown gateway: never trust a success."""

    reference_fields = ("reference", "payment_reference", "order_id", "externalId")

    def outcome(self, payload: dict) -> str:
        return OUTCOME_FAILURE

    def failure_reason(self, payload: dict) -> str | None:
        return "Unsupported gateway"


GATEWAY_MAPPERS: dict[str, GatewayOutcomeMapper] = {
    GATEWAY_ORANGE_MONEY: OrangeMoneyMapper(),
    GATEWAY_MTN_MOMO: MtnMomoMapper(),
}


def mapper_for(gateway: str | None) -> GatewayOutcomeMapper:
    return GATEWAY_MAPPERS.get((gateway or "").strip().upper(), FailSafeMapper())


# =============================================================================
# HANDLING
# =============================================================================

@dataclass
class WebhookResult:
    payment_reference: str
    outcome: str
    status: str
    changed: bool

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "payment_reference": self.payment_reference,
            "outcome": self.outcome,
            "status": self.status,
            "changed": self.changed,
        }


def handle_webhook(gateway: str, payload: dict, *, now: datetime | None = None) -> WebhookResult:
    """
    Apply a verified gateway webhook to its payment.

    Raises:
        ValidationError: payload is not a dict or references no known payment
    """
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be an object", gateway=gateway)

    now = now or utcnow()
    mapper = mapper_for(gateway)
    outcome = mapper.outcome(payload)
    reference = mapper.payment_reference(payload)
    if not reference:
        raise ValidationError("Webhook payload carries no payment reference", gateway=gateway)

    payment = db.session.query(Payment).filter_by(reference=reference).first()
    if payment is None:
        raise ValidationError("Unknown payment reference", payment_reference=reference, gateway=gateway)

    if isinstance(mapper, FailSafeMapper):
        current_app.logger.warning("Webhook from unsupported gateway %r for payment %s", gateway, reference)

    if outcome == OUTCOME_FAILURE:
        result = escrow_service.fail(
            payment.id, gateway=gateway, reason=mapper.failure_reason(payload), now=now,
        )
        return WebhookResult(reference, outcome, result.status, result.changed)

    result = escrow_service.confirm(
        payment.id, gateway=gateway, transaction_id=mapper.transaction_id(payload), now=now,
    )
    changed = result.changed

    if result.status == PAYMENT_CONFIRMED:
        if result.payment.is_escrow_bound:
            result = escrow_service.hold(payment.id, now=now)
        else:
            result = escrow_service.finalize_direct(payment.id, now=now)
        changed = changed or result.changed
    elif not changed:
        current_app.logger.info("Webhook replay for payment %s ignored (status %s)", reference, result.status)

    return WebhookResult(reference, outcome, result.status, changed)
