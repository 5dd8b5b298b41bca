# Overview: Service-layer operations for contract signatures; OTP signing, retraction window, locking.

"""
Signature & Locking Protocol

WHY: A contract binds only when both principals sign with a one-time code.
The law then gives either party 48 hours to withdraw. After that the contract
is locked, sealed and archived, and can never change again.

STATE MACHINE:
    UNSIGNED -> PARTIALLY_SIGNED -> FULLY_SIGNED -> RETRACTION_WINDOW -> LOCKED
                                                          |
                                                          +-> CANCELLED

DESIGN:
- Only this module mutates contract status and lock state.
- Every mutation runs under SELECT ... FOR UPDATE on the single contract row.
- FULLY_SIGNED is recorded in the log but immediately becomes
  RETRACTION_WINDOW in the same transaction.
- finalize_if_expired() locks and archives in one transaction. A storage
  failure leaves the contract in RETRACTION_WINDOW for the next sweep.

SIGNATURE HASH:
    sha256("contract_id|reference|party_id|role|signed_at|origin_ip|document_path|document_hash")
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app

from ..errors import (
    AlreadySigned,
    IntegrityViolation,
    InvalidOrExpiredCode,
    InvalidStateTransition,
    RetractionExpired,
    SettlementError,
    Unauthorized,
    ValidationError,
)
from ..extensions import db
from ..models import Contract, ContractSignature
from ..models.contracts import (
    CONTRACT_CANCELLED,
    CONTRACT_FULLY_SIGNED,
    CONTRACT_LOCKED,
    CONTRACT_PARTIALLY_SIGNED,
    CONTRACT_RETRACTION_WINDOW,
    CONTRACT_UNSIGNED,
    ROLE_COUNTERPARTY,
    ROLE_OWNER,
)
from settlement.time_utils import to_utc_z, utcnow
from .audit_service import ENTITY_CONTRACT, append_transition
from .collaborators import OtpChallenge, get_collaborators, notify_safely
from .commission_service import COMMISSION_RATES
from .concurrency import lock_for_update, run_locked
from .integrity_service import get_integrity_service


RETRACTION_HOURS = 48
RETRACTION_WINDOW = timedelta(hours=RETRACTION_HOURS)
REMINDER_WITHIN_HOURS = 6

SIGNABLE_STATES = (CONTRACT_UNSIGNED, CONTRACT_PARTIALLY_SIGNED)

_REF_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class SignatureResult:
    contract: Contract
    signature: ContractSignature | None
    changed: bool = True

    @property
    def fully_signed(self) -> bool:
        return self.contract.status in (CONTRACT_FULLY_SIGNED, CONTRACT_RETRACTION_WINDOW, CONTRACT_LOCKED)

    def to_dict(self) -> dict:
        return {
            "contract_reference": self.contract.reference,
            "status": self.contract.status,
            "fully_signed": self.fully_signed,
            "retraction_deadline": to_utc_z(self.contract.retraction_deadline),
            "signature": self.signature.to_dict() if self.signature is not None else None,
            "changed": self.changed,
        }


@dataclass
class ContractResult:
    contract: Contract
    changed: bool

    @property
    def status(self) -> str:
        return self.contract.status

    def to_dict(self) -> dict:
        return {
            "contract_reference": self.contract.reference,
            "status": self.contract.status,
            "locked": self.contract.locked,
            "changed": self.changed,
        }


# =============================================================================
# HELPERS
# =============================================================================

def _random_code(length: int) -> str:
    return "".join(secrets.choice(_REF_ALPHABET) for _ in range(length))


def _get_contract(contract_id: int) -> Contract:
    contract = db.session.get(Contract, contract_id)
    if contract is None:
        raise ValidationError("Contract not found", contract_id=contract_id)
    return contract


def _lock_contract(contract_id: int) -> Contract:
    contract = lock_for_update(db.session.query(Contract).filter_by(id=contract_id)).first()
    if contract is None:
        raise ValidationError("Contract not found", contract_id=contract_id)
    return contract


def _transition(contract: Contract, to_state: str, event_type: str, now: datetime, *, actor_id=None, note=None, payload=None):
    from_state = contract.status
    contract.status = to_state
    append_transition(
        entity_type=ENTITY_CONTRACT,
        entity_id=contract.id,
        event_type=event_type,
        from_state=from_state,
        to_state=to_state,
        actor_id=actor_id,
        occurred_at=now,
        note=note,
        payload=payload,
    )


def _require_party(contract: Contract, party_id: str) -> str:
    role = contract.party_role(party_id)
    if role is None:
        raise Unauthorized(
            "Only the contract owner or counterparty may act on this contract",
            contract_reference=contract.reference,
        )
    return role


def _signature_of(contract: Contract, party_id: str) -> ContractSignature | None:
    return db.session.query(ContractSignature).filter_by(
        contract_id=contract.id,
        party_id=party_id,
    ).first()


def _notify_both(contract: Contract, event_type: str, payload: dict) -> None:
    for party_id in contract.parties:
        notify_safely(party_id, event_type, {"contract_reference": contract.reference, **payload})


def compute_signature_hash(contract: Contract, party_id: str, role: str, signed_at: datetime, origin_ip: str | None) -> str:
    data = "|".join([
        str(contract.id),
        contract.reference or "",
        party_id,
        role,
        to_utc_z(signed_at),
        origin_ip or "",
        contract.document_path or "",
        contract.document_hash or "",
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def compute_seal_hash(contract: Contract) -> str:
    """Electronic seal: final hash over the document and both signatures."""
    signatures = {s.role: s for s in contract.signatures}
    owner_sig = signatures.get(ROLE_OWNER)
    counterparty_sig = signatures.get(ROLE_COUNTERPARTY)
    seal_data = {
        "reference": contract.reference,
        "owner_id": contract.owner_id,
        "counterparty_id": contract.counterparty_id,
        "owner_signed_at": to_utc_z(owner_sig.signed_at) if owner_sig else None,
        "counterparty_signed_at": to_utc_z(counterparty_sig.signed_at) if counterparty_sig else None,
        "owner_signature_hash": owner_sig.signature_hash if owner_sig else None,
        "counterparty_signature_hash": counterparty_sig.signature_hash if counterparty_sig else None,
        "document_hash": contract.document_hash,
    }
    return hashlib.sha256(json.dumps(seal_data, sort_keys=True).encode("utf-8")).hexdigest()


def signed_content(contract: Contract) -> bytes:
    """
    Bytes archived at lock time.

    The rendered document when one was stored (its hash is re-checked),
    otherwise a canonical JSON record of the terms and signatures.
    """
    if contract.document_path:
        content = get_collaborators().storage.get(contract.document_path)
        if contract.document_hash and hashlib.sha256(content).hexdigest() != contract.document_hash:
            raise IntegrityViolation(
                "Signed document no longer matches its recorded hash",
                contract_reference=contract.reference,
            )
        return content

    record = {
        "reference": contract.reference,
        "listing_ref": contract.listing_ref,
        "owner_id": contract.owner_id,
        "counterparty_id": contract.counterparty_id,
        "transaction_type": contract.transaction_type,
        "base_amount": contract.base_amount,
        "deposit_amount": contract.deposit_amount,
        "signatures": [s.to_dict() for s in contract.signatures],
        "seal_hash": contract.seal_hash,
    }
    return json.dumps(record, sort_keys=True).encode("utf-8")


# =============================================================================
# CONTRACT CREATION
# =============================================================================

def create_contract(
    *,
    owner_id: str,
    counterparty_id: str,
    transaction_type: str,
    base_amount: int,
    deposit_amount: int = 0,
    listing_ref: str | None = None,
    document_path: str | None = None,
    document_hash: str | None = None,
    now: datetime | None = None,
) -> Contract:
    """Register an unsigned contract between two distinct principals."""
    if not owner_id or not counterparty_id:
        raise ValidationError("Contract requires an owner and a counterparty")
    if owner_id == counterparty_id:
        raise ValidationError("Owner and counterparty must be different parties")
    if transaction_type not in COMMISSION_RATES:
        raise ValidationError(f"Unknown transaction type: {transaction_type}", transaction_type=transaction_type)
    if base_amount is None or base_amount <= 0:
        raise ValidationError("Base amount must be positive", base_amount=base_amount)
    if deposit_amount is None or deposit_amount < 0:
        raise ValidationError("Deposit amount cannot be negative", deposit_amount=deposit_amount)

    now = now or utcnow()
    contract = Contract(
        reference=f"CTR-{now:%Y}-{_random_code(6)}",
        listing_ref=listing_ref,
        owner_id=owner_id,
        counterparty_id=counterparty_id,
        transaction_type=transaction_type,
        base_amount=base_amount,
        deposit_amount=deposit_amount,
        document_path=document_path,
        document_hash=document_hash,
        status=CONTRACT_UNSIGNED,
        locked=False,
        created_at=now,
    )
    db.session.add(contract)
    db.session.flush()
    append_transition(
        entity_type=ENTITY_CONTRACT,
        entity_id=contract.id,
        event_type="contract.created",
        to_state=CONTRACT_UNSIGNED,
        actor_id=owner_id,
        occurred_at=now,
    )
    db.session.commit()

    current_app.logger.info("Contract %s registered (%s)", contract.reference, transaction_type)
    return contract


# =============================================================================
# SIGNING
# =============================================================================

def request_signature(contract_id: int, party_id: str) -> OtpChallenge:
    """Ask the OTP collaborator for a code bound to (contract, party)."""
    contract = _get_contract(contract_id)
    _require_party(contract, party_id)
    if _signature_of(contract, party_id) is not None:
        raise AlreadySigned("You have already signed this contract", contract_reference=contract.reference)
    if contract.status not in SIGNABLE_STATES:
        raise InvalidStateTransition(
            f"Contract in state {contract.status} cannot be signed",
            contract_reference=contract.reference,
        )

    return get_collaborators().otp.issue((contract.reference, party_id))


def sign(
    contract_id: int,
    party_id: str,
    code: str,
    *,
    origin_ip: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> SignatureResult:
    """
    Record one party's OTP-verified signature.

    The second distinct signature moves the contract to FULLY_SIGNED and
    straight into RETRACTION_WINDOW with deadline now + 48h.

    Raises:
        Unauthorized: party is neither owner nor counterparty
        AlreadySigned: party already signed
        InvalidStateTransition: contract cancelled or locked
        InvalidOrExpiredCode: OTP rejected
    """
    contract = _get_contract(contract_id)
    role = _require_party(contract, party_id)
    if _signature_of(contract, party_id) is not None:
        raise AlreadySigned("You have already signed this contract", contract_reference=contract.reference)
    if contract.status not in SIGNABLE_STATES:
        raise InvalidStateTransition(
            f"Contract in state {contract.status} cannot be signed",
            contract_reference=contract.reference,
        )

    # Validated once, outside the lock: codes are single use
    if not get_collaborators().otp.validate((contract.reference, party_id), code):
        raise InvalidOrExpiredCode("Invalid or expired verification code", contract_reference=contract.reference)

    now = now or utcnow()

    def _op():
        locked = _lock_contract(contract_id)
        if _signature_of(locked, party_id) is not None:
            raise AlreadySigned("You have already signed this contract", contract_reference=locked.reference)
        if locked.status not in SIGNABLE_STATES:
            raise InvalidStateTransition(
                f"Contract in state {locked.status} cannot be signed",
                contract_reference=locked.reference,
            )

        signature = ContractSignature(
            contract=locked,
            signature_id=f"SIG-{_random_code(12)}",
            party_id=party_id,
            role=role,
            signed_at=now,
            signature_hash=compute_signature_hash(locked, party_id, role, now, origin_ip),
            origin_ip=origin_ip,
            user_agent=(user_agent or "")[:255] or None,
            verification_method="OTP",
        )
        db.session.add(signature)
        db.session.flush()

        signed_count = db.session.query(ContractSignature).filter_by(contract_id=locked.id).count()
        event_payload = {"signature_id": signature.signature_id, "role": role}

        if signed_count < 2:
            _transition(locked, CONTRACT_PARTIALLY_SIGNED, "contract.signed", now, actor_id=party_id, payload=event_payload)
        else:
            locked.fully_signed_at = now
            locked.retraction_deadline = now + RETRACTION_WINDOW
            _transition(locked, CONTRACT_FULLY_SIGNED, "contract.signed", now, actor_id=party_id, payload=event_payload)
            _transition(
                locked,
                CONTRACT_RETRACTION_WINDOW,
                "contract.retraction_opened",
                now,
                payload={"retraction_deadline": to_utc_z(locked.retraction_deadline)},
            )

        db.session.commit()
        return SignatureResult(locked, signature)

    result = run_locked(_op)
    contract = result.contract
    current_app.logger.info("Contract %s signed by %s (%s)", contract.reference, party_id, role)

    if contract.status == CONTRACT_RETRACTION_WINDOW:
        _notify_both(contract, "contract.fully_signed", {
            "retraction_deadline": to_utc_z(contract.retraction_deadline),
        })
    else:
        notify_safely(contract.other_party(party_id), "contract.signed", {
            "contract_reference": contract.reference,
            "signed_by": party_id,
        })
    return result


# =============================================================================
# RETRACTION
# =============================================================================

def cancel(
    contract_id: int,
    requester_id: str,
    reason: str,
    *,
    now: datetime | None = None,
) -> ContractResult:
    """
    Withdraw from a fully signed contract inside the 48h window.

    Already CANCELLED: no-op.

    Raises:
        Unauthorized: requester is not a party
        ValidationError: empty reason
        RetractionExpired: deadline passed or contract locked
        InvalidStateTransition: contract not yet fully signed
    """
    contract = _get_contract(contract_id)
    _require_party(contract, requester_id)
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required", contract_reference=contract.reference)
    reason = reason.strip()[:500]
    now = now or utcnow()

    def _op():
        locked = _lock_contract(contract_id)
        if locked.status == CONTRACT_CANCELLED:
            return ContractResult(locked, False)
        if locked.status == CONTRACT_LOCKED or locked.locked:
            raise RetractionExpired("Contract is locked; the retraction period has ended", contract_reference=locked.reference)
        if locked.status != CONTRACT_RETRACTION_WINDOW:
            raise InvalidStateTransition(
                f"Contract in state {locked.status} is not in its retraction period",
                contract_reference=locked.reference,
            )
        if now >= locked.retraction_deadline:
            raise RetractionExpired(
                "The 48-hour retraction period has expired",
                contract_reference=locked.reference,
                retraction_deadline=to_utc_z(locked.retraction_deadline),
            )

        locked.cancelled_at = now
        locked.cancelled_by = requester_id
        locked.cancel_reason = reason
        _transition(locked, CONTRACT_CANCELLED, "contract.cancelled", now, actor_id=requester_id, note=reason[:255])
        db.session.commit()
        return ContractResult(locked, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info("Contract %s cancelled by %s", result.contract.reference, requester_id)
        notify_safely(result.contract.other_party(requester_id), "contract.cancelled", {
            "contract_reference": result.contract.reference,
            "cancelled_by": requester_id,
            "reason": reason,
        })
    return result


def retraction_seconds_remaining(contract: Contract, now: datetime | None = None) -> int | None:
    if contract.retraction_deadline is None:
        return None
    now = now or utcnow()
    return max(0, int((contract.retraction_deadline - now).total_seconds()))


# =============================================================================
# LOCKING
# =============================================================================

def finalize_if_expired(contract_id: int, *, now: datetime | None = None) -> ContractResult:
    """
    Lock and archive a contract whose retraction deadline has passed.

    Idempotent: locked, cancelled, not yet due or not yet fully signed
    contracts are returned unchanged.

    Raises:
        ExternalDependencyError: archive storage failed (contract stays in window)
        IntegrityViolation: stored document no longer matches its hash
    """
    now = now or utcnow()

    def _op():
        contract = _lock_contract(contract_id)
        if contract.status != CONTRACT_RETRACTION_WINDOW or contract.locked:
            return ContractResult(contract, False)
        if now < contract.retraction_deadline:
            return ContractResult(contract, False)

        contract.seal_hash = compute_seal_hash(contract)
        get_integrity_service().archive(contract, signed_content(contract), now=now)

        contract.locked = True
        contract.locked_at = now
        contract.retraction_expired_at = now
        _transition(
            contract,
            CONTRACT_LOCKED,
            "contract.locked",
            now,
            payload={"seal_hash": contract.seal_hash, "archive_hash": contract.archive_hash},
        )
        db.session.commit()
        return ContractResult(contract, True)

    result = run_locked(_op)
    if result.changed:
        current_app.logger.info("Contract %s locked and archived", result.contract.reference)
        _notify_both(result.contract, "contract.locked", {"seal_hash": result.contract.seal_hash})
    return result


def finalize_expired_contracts(now: datetime | None = None, *, dry_run: bool = False) -> dict:
    """Sweep: lock every contract whose retraction window has closed."""
    now = now or utcnow()
    contracts = db.session.query(Contract).filter(
        Contract.status == CONTRACT_RETRACTION_WINDOW,
        Contract.retraction_deadline <= now,
        Contract.locked.is_(False),
    ).order_by(Contract.retraction_deadline, Contract.id).all()

    summary = {"found": len(contracts), "finalized": 0, "errors": 0, "references": []}
    for contract in contracts:
        summary["references"].append(contract.reference)
        if dry_run:
            continue
        contract_id, reference = contract.id, contract.reference
        try:
            result = finalize_if_expired(contract_id, now=now)
        except SettlementError as exc:
            summary["errors"] += 1
            current_app.logger.error("Failed to finalize contract %s: %s", reference, exc.message)
            continue
        if result.changed:
            summary["finalized"] += 1

    return summary


def remind_approaching_expiry(
    now: datetime | None = None,
    *,
    within_hours: int = REMINDER_WITHIN_HOURS,
    dry_run: bool = False,
) -> list[dict]:
    """Notify both parties once when a retraction window closes within the next hours."""
    now = now or utcnow()
    contracts = db.session.query(Contract).filter(
        Contract.status == CONTRACT_RETRACTION_WINDOW,
        Contract.retraction_deadline > now,
        Contract.retraction_deadline < now + timedelta(hours=within_hours),
        Contract.reminder_sent_at.is_(None),
    ).order_by(Contract.retraction_deadline).all()

    reminders = []
    for contract in contracts:
        hours_remaining = int((contract.retraction_deadline - now).total_seconds() // 3600)
        reminders.append({"contract_reference": contract.reference, "hours_remaining": hours_remaining})
        if dry_run:
            continue

        def _op(contract_id=contract.id):
            locked = _lock_contract(contract_id)
            if locked.reminder_sent_at is not None or locked.status != CONTRACT_RETRACTION_WINDOW:
                return False
            locked.reminder_sent_at = now
            db.session.commit()
            return True

        if run_locked(_op):
            _notify_both(contract, "contract.retraction_reminder", {"hours_remaining": hours_remaining})

    return reminders


# =============================================================================
# VERIFICATION
# =============================================================================

def verify_signature(contract: Contract, signature: ContractSignature) -> bool:
    expected = compute_signature_hash(
        contract, signature.party_id, signature.role, signature.signed_at, signature.origin_ip,
    )
    return hmac.compare_digest(expected, signature.signature_hash)


def signature_certificate(contract: Contract, now: datetime | None = None) -> dict:
    """Signature evidence for display or legal export."""
    signatures = []
    for signature in contract.signatures:
        entry = signature.to_dict()
        entry["valid"] = verify_signature(contract, signature)
        signatures.append(entry)

    seal_valid = None
    if contract.seal_hash is not None:
        seal_valid = hmac.compare_digest(contract.seal_hash, compute_seal_hash(contract))

    return {
        "contract_reference": contract.reference,
        "status": contract.status,
        "hash_algorithm": "SHA-256",
        "document_hash": contract.document_hash,
        "signatures": signatures,
        "all_signatures_valid": all(s["valid"] for s in signatures) if signatures else False,
        "seal_hash": contract.seal_hash,
        "seal_valid": seal_valid,
        "retraction_deadline": to_utc_z(contract.retraction_deadline),
        "retraction_seconds_remaining": retraction_seconds_remaining(contract, now),
        "locked_at": to_utc_z(contract.locked_at),
        "archive_hash": contract.archive_hash,
    }
