from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from ..errors import IntegrityViolation
from settlement.time_utils import to_utc_z


CONTRACT_UNSIGNED = "UNSIGNED"
CONTRACT_PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
CONTRACT_FULLY_SIGNED = "FULLY_SIGNED"
CONTRACT_RETRACTION_WINDOW = "RETRACTION_WINDOW"
CONTRACT_LOCKED = "LOCKED"
CONTRACT_CANCELLED = "CANCELLED"

CONTRACT_STATES = (
    CONTRACT_UNSIGNED,
    CONTRACT_PARTIALLY_SIGNED,
    CONTRACT_FULLY_SIGNED,
    CONTRACT_RETRACTION_WINDOW,
    CONTRACT_LOCKED,
    CONTRACT_CANCELLED,
)

ROLE_OWNER = "OWNER"
ROLE_COUNTERPARTY = "COUNTERPARTY"


class Contract(db.Model):
    """
    One legal agreement between an owner and a counterparty.

    STATE MACHINE:
        UNSIGNED -> PARTIALLY_SIGNED -> FULLY_SIGNED -> RETRACTION_WINDOW -> LOCKED
                                                             |
                                                             +-> CANCELLED

    INVARIANTS:
    - locked implies both signatures exist and retraction_deadline has passed
    - retraction_expired_at is set at most once
    - archive_hash never changes once recorded (WORM)

    OWNERSHIP: Only the signature protocol mutates status and lock state.
    """
    __tablename__ = "contracts"
    __table_args__ = (
        db.Index("ix_contracts_status_deadline", "status", "retraction_deadline"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable reference (CTR-YYYY-XXXXXX)
    reference = db.Column(db.String(32), nullable=False, unique=True, index=True)
    listing_ref = db.Column(db.String(64), nullable=True, index=True)

    owner_id = db.Column(db.String(64), nullable=False, index=True)
    counterparty_id = db.Column(db.String(64), nullable=False, index=True)

    # Commercial facts used to price payments (smallest currency unit)
    transaction_type = db.Column(db.String(32), nullable=False)
    base_amount = db.Column(db.BigInteger, nullable=False)
    deposit_amount = db.Column(db.BigInteger, nullable=False, default=0)

    # Rendered document to be signed (rendered and stored by the PDF collaborator)
    document_path = db.Column(db.String(500), nullable=True)
    document_hash = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(24), nullable=False, default=CONTRACT_UNSIGNED, index=True)

    # Signature / retraction window
    fully_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    retraction_deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    retraction_expired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Lock state
    locked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Cancellation (retraction) audit trail
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.String(64), nullable=True)
    cancel_reason = db.Column(db.String(500), nullable=True)

    # Archival (write once)
    seal_hash = db.Column(db.String(64), nullable=True)
    archive_hash = db.Column(db.String(64), nullable=True)
    archive_path = db.Column(db.String(500), nullable=True)
    encryption_algorithm = db.Column(db.String(32), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    retention_until = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @validates("archive_hash", "archive_path")
    def _validate_write_once(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise IntegrityViolation(
                f"Contract {key} is write-once",
                contract_reference=self.reference,
            )
        return value

    @validates("retraction_expired_at")
    def _validate_retraction_expired_once(self, key, value):
        if self.retraction_expired_at is not None and value != self.retraction_expired_at:
            raise IntegrityViolation(
                "retraction_expired_at is set at most once",
                contract_reference=self.reference,
            )
        return value

    def party_role(self, party_id: str) -> str | None:
        if party_id == self.owner_id:
            return ROLE_OWNER
        if party_id == self.counterparty_id:
            return ROLE_COUNTERPARTY
        return None

    def other_party(self, party_id: str) -> str | None:
        if party_id == self.owner_id:
            return self.counterparty_id
        if party_id == self.counterparty_id:
            return self.owner_id
        return None

    @property
    def parties(self) -> tuple[str, str]:
        return (self.owner_id, self.counterparty_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "listing_ref": self.listing_ref,
            "owner_id": self.owner_id,
            "counterparty_id": self.counterparty_id,
            "transaction_type": self.transaction_type,
            "base_amount": self.base_amount,
            "deposit_amount": self.deposit_amount,
            "document_hash": self.document_hash,
            "status": self.status,
            "fully_signed_at": to_utc_z(self.fully_signed_at),
            "retraction_deadline": to_utc_z(self.retraction_deadline),
            "retraction_expired_at": to_utc_z(self.retraction_expired_at),
            "locked": self.locked,
            "locked_at": to_utc_z(self.locked_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "cancel_reason": self.cancel_reason,
            "seal_hash": self.seal_hash,
            "archive_hash": self.archive_hash,
            "archive_path": self.archive_path,
            "encryption_algorithm": self.encryption_algorithm,
            "archived_at": to_utc_z(self.archived_at),
            "retention_until": to_utc_z(self.retention_until),
            "signatures": [s.to_dict() for s in self.signatures],
            "version_id": self.version_id,
        }


class ContractSignature(db.Model):
    """
    One party's electronic signature (OTP-verified).

    WHY: Each signature carries its own SHA-256 hash over the contract identity,
    signer, timestamp, origin and document hash so it can be re-verified later.
    """
    __tablename__ = "contract_signatures"
    __table_args__ = (
        db.UniqueConstraint("contract_id", "party_id", name="uq_contract_signatures_party"),
        db.UniqueConstraint("contract_id", "role", name="uq_contract_signatures_role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, db.ForeignKey("contracts.id"), nullable=False, index=True)

    signature_id = db.Column(db.String(32), nullable=False, unique=True)
    party_id = db.Column(db.String(64), nullable=False)
    role = db.Column(db.String(16), nullable=False)

    signed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    signature_hash = db.Column(db.String(64), nullable=False)
    origin_ip = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    verification_method = db.Column(db.String(16), nullable=False, default="OTP")

    contract = db.relationship(
        "Contract",
        backref=db.backref("signatures", lazy=True, order_by="ContractSignature.signed_at"),
    )

    def to_dict(self) -> dict:
        return {
            "signature_id": self.signature_id,
            "party_id": self.party_id,
            "role": self.role,
            "signed_at": to_utc_z(self.signed_at),
            "signature_hash": self.signature_hash,
            "origin_ip": self.origin_ip,
            "verification_method": self.verification_method,
        }


class IntegrityAudit(db.Model):
    """
    Archive hashes stored apart from the contract row.

    WHY: Independent verification. Tampering with the contract row alone
    cannot make a modified artifact verify.

    IMMUTABLE: Written once at archive time.
    """
    __tablename__ = "integrity_audits"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(db.Integer, db.ForeignKey("contracts.id"), nullable=False, unique=True)

    file_path = db.Column(db.String(500), nullable=False)
    original_hash = db.Column(db.String(64), nullable=False)  # SHA-256 of plaintext
    encrypted_hash = db.Column(db.String(64), nullable=False)  # SHA-256 of stored blob
    file_size = db.Column(db.BigInteger, nullable=False)
    algorithm = db.Column(db.String(32), nullable=False)

    archived_at = db.Column(db.DateTime(timezone=True), nullable=False)
    retention_until = db.Column(db.DateTime(timezone=True), nullable=False)

    contract = db.relationship("Contract", backref=db.backref("integrity_audit", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contract_id": self.contract_id,
            "file_path": self.file_path,
            "original_hash": self.original_hash,
            "encrypted_hash": self.encrypted_hash,
            "file_size": self.file_size,
            "algorithm": self.algorithm,
            "archived_at": to_utc_z(self.archived_at),
            "retention_until": to_utc_z(self.retention_until),
        }
