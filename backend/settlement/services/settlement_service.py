# Overview: Exposed settlement surface; resolves references and delegates to the owning service.

"""
Settlement Surface

WHY: The web layer (not part of this package) speaks in contract and payment
references. This module resolves them and calls the component that owns the
state: signature_service for contracts, escrow_service for payments.

Nothing here mutates state directly except payment creation.
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime

from flask import current_app

from ..errors import InvalidStateTransition, ValidationError
from ..extensions import db
from ..models import Contract, Payment
from ..models.contracts import CONTRACT_LOCKED
from ..models.payments import (
    PAYMENT_FAILED,
    PAYMENT_INITIATED,
    SETTLEMENT_DIRECT,
    SETTLEMENT_ESCROW,
)
from settlement.time_utils import utcnow
from . import escrow_service, signature_service, webhook_service
from .audit_service import ENTITY_PAYMENT, append_transition
from .collaborators import OtpChallenge, get_collaborators
from .commission_service import ContractFacts, Invoice, build_invoice
from .concurrency import lock_for_update, run_locked
from .integrity_service import IntegrityReport, get_integrity_service


_REF_ALPHABET = string.ascii_uppercase + string.digits


# =============================================================================
# LOOKUPS
# =============================================================================

def get_contract(contract_ref: str) -> Contract:
    contract = db.session.query(Contract).filter_by(reference=contract_ref).first()
    if contract is None:
        raise ValidationError("Contract not found", contract_reference=contract_ref)
    return contract


def get_payment(payment_ref: str) -> Payment:
    payment = db.session.query(Payment).filter_by(reference=payment_ref).first()
    if payment is None:
        raise ValidationError("Payment not found", payment_reference=payment_ref)
    return payment


def _new_payment_reference(now: datetime) -> str:
    for _ in range(5):
        suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(5))
        reference = f"PAY-{now:%Y%m%d}-{suffix}"
        if not db.session.query(Payment.id).filter_by(reference=reference).first():
            return reference
    raise InvalidStateTransition("Could not allocate a unique payment reference")


# =============================================================================
# PRICING / PAYMENTS
# =============================================================================

def calculate_invoice(facts: ContractFacts) -> Invoice:
    return build_invoice(facts)


def _has_active_payment(contract_id: int) -> bool:
    return db.session.query(Payment.id).filter(
        Payment.contract_id == contract_id,
        Payment.status != PAYMENT_FAILED,
    ).first() is not None


def initiate_payment(
    contract_ref: str,
    payer_id: str,
    *,
    settlement_mode: str = SETTLEMENT_ESCROW,
    gateway: str | None = None,
    now: datetime | None = None,
) -> Payment:
    """
    Create a priced payment against a locked contract.

    The payee is the other principal. The platform fee is computed here, once,
    from the payer's loyalty tier and never changes afterwards.

    The active-payment rule is re-checked under the contract row lock, so two
    concurrent initiations for one contract create exactly one payment.
    """
    if settlement_mode not in (SETTLEMENT_ESCROW, SETTLEMENT_DIRECT):
        raise ValidationError("Unknown settlement mode", settlement_mode=settlement_mode)

    contract = get_contract(contract_ref)
    contract_id = contract.id
    if contract.status != CONTRACT_LOCKED:
        raise InvalidStateTransition(
            "Payments can only be initiated against a locked contract",
            contract_reference=contract_ref,
            status=contract.status,
        )

    payee_id = contract.other_party(payer_id)
    if payee_id is None:
        raise ValidationError("Payer must be a party to the contract", contract_reference=contract_ref)

    if _has_active_payment(contract_id):
        raise InvalidStateTransition("Contract already has an active payment", contract_reference=contract_ref)

    # Pricing talks to the tier collaborator; keep it outside the row lock
    tier = get_collaborators().tiers.tier_for(payer_id)
    invoice = build_invoice(ContractFacts(
        transaction_type=contract.transaction_type,
        base_amount=contract.base_amount,
        deposit_amount=contract.deposit_amount or 0,
        loyalty_tier=tier,
        contract_reference=contract.reference,
    ))
    now = now or utcnow()

    def _op():
        locked = lock_for_update(db.session.query(Contract).filter_by(id=contract_id)).first()
        if locked.status != CONTRACT_LOCKED:
            raise InvalidStateTransition(
                "Payments can only be initiated against a locked contract",
                contract_reference=contract_ref,
                status=locked.status,
            )
        if _has_active_payment(contract_id):
            raise InvalidStateTransition("Contract already has an active payment", contract_reference=contract_ref)

        payment = Payment(
            reference=_new_payment_reference(now),
            contract_id=contract_id,
            payer_id=payer_id,
            payee_id=payee_id,
            rent_amount=invoice.principal,
            deposit_amount=invoice.deposit,
            platform_fee=invoice.commission,
            transaction_type=locked.transaction_type,
            loyalty_tier=tier,
            commission_rate=invoice.quote.rate_used,
            discount_rate=invoice.quote.discount_rate,
            settlement_mode=settlement_mode,
            status=PAYMENT_INITIATED,
            gateway=gateway,
            created_at=now,
        )
        db.session.add(payment)
        db.session.flush()
        append_transition(
            entity_type=ENTITY_PAYMENT,
            entity_id=payment.id,
            event_type="payment.initiated",
            to_state=PAYMENT_INITIATED,
            actor_id=payer_id,
            occurred_at=now,
            payload={"total_amount": payment.total_amount, "platform_fee": payment.platform_fee},
        )
        db.session.commit()
        return payment

    payment = run_locked(_op)

    current_app.logger.info(
        "Payment %s initiated for contract %s: total=%s fee=%s",
        payment.reference,
        contract_ref,
        payment.total_amount,
        payment.platform_fee,
    )
    return payment


def on_gateway_webhook(gateway_name: str, payload: dict, *, now: datetime | None = None) -> webhook_service.WebhookResult:
    return webhook_service.handle_webhook(gateway_name, payload, now=now)


def get_escrow_status(payment_ref: str, *, now: datetime | None = None) -> dict:
    return escrow_service.get_status(get_payment(payment_ref).id, now=now)


def release_payment(payment_ref: str, *, actor_id: str | None = None, now: datetime | None = None):
    """Manual validation by the payer (or an admin) before the 48h timeout."""
    return escrow_service.release(get_payment(payment_ref).id, actor_id=actor_id, now=now)


def refund_payment(payment_ref: str, reason: str, *, actor_id: str | None = None, now: datetime | None = None):
    return escrow_service.refund(get_payment(payment_ref).id, reason, actor_id=actor_id, now=now)


# =============================================================================
# CONTRACTS
# =============================================================================

def register_contract(**fields) -> Contract:
    return signature_service.create_contract(**fields)


def request_signature(contract_ref: str, party_id: str) -> OtpChallenge:
    return signature_service.request_signature(get_contract(contract_ref).id, party_id)


def submit_signature(
    contract_ref: str,
    party_id: str,
    code: str,
    *,
    origin_ip: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> signature_service.SignatureResult:
    return signature_service.sign(
        get_contract(contract_ref).id,
        party_id,
        code,
        origin_ip=origin_ip,
        user_agent=user_agent,
        now=now,
    )


def cancel_contract(contract_ref: str, party_id: str, reason: str, *, now: datetime | None = None):
    return signature_service.cancel(get_contract(contract_ref).id, party_id, reason, now=now)


def finalize_contract(contract_ref: str, *, now: datetime | None = None):
    return signature_service.finalize_if_expired(get_contract(contract_ref).id, now=now)


def verify_integrity(contract_ref: str) -> IntegrityReport:
    return get_integrity_service().verify(get_contract(contract_ref))
