from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from ..errors import ValidationError
from settlement.time_utils import to_utc_z


# Payment lifecycle (forward-only; DISPUTED and FAILED are terminal here)
PAYMENT_INITIATED = "INITIATED"
PAYMENT_CONFIRMED = "CONFIRMED"
PAYMENT_ESCROW = "ESCROW"
PAYMENT_CONFIRMED_FINAL = "CONFIRMED_FINAL"
PAYMENT_REFUNDED = "REFUNDED"
PAYMENT_DISPUTED = "DISPUTED"
PAYMENT_FAILED = "FAILED"

PAYMENT_STATES = (
    PAYMENT_INITIATED,
    PAYMENT_CONFIRMED,
    PAYMENT_ESCROW,
    PAYMENT_CONFIRMED_FINAL,
    PAYMENT_REFUNDED,
    PAYMENT_DISPUTED,
    PAYMENT_FAILED,
)

SETTLEMENT_ESCROW = "ESCROW"
SETTLEMENT_DIRECT = "DIRECT"


class Payment(db.Model):
    """
    One settlement attempt for one contract.

    WHY: Funds move between two untrusted parties through the platform.
    The platform fee is priced once at creation and is never refunded.

    MONEY: All amounts are integers in the smallest currency unit.
    total_amount == rent_amount + deposit_amount + platform_fee, always
    (enforced by a check constraint and at construction).

    OWNERSHIP: Only the escrow ledger mutates status. Contracts are linked by
    reference; no relationship back-population into contract state.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint(
            "total_amount = rent_amount + deposit_amount + platform_fee",
            name="ck_payments_total_matches_components",
        ),
        db.CheckConstraint("rent_amount >= 0", name="ck_payments_rent_non_negative"),
        db.CheckConstraint("deposit_amount >= 0", name="ck_payments_deposit_non_negative"),
        db.CheckConstraint("platform_fee >= 0", name="ck_payments_fee_non_negative"),
        db.Index("ix_payments_status_escrow", "status", "entered_escrow_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable reference (PAY-YYYYMMDD-XXXXX)
    reference = db.Column(db.String(32), nullable=False, unique=True, index=True)

    contract_id = db.Column(db.Integer, db.ForeignKey("contracts.id"), nullable=False, index=True)
    payer_id = db.Column(db.String(64), nullable=False, index=True)
    payee_id = db.Column(db.String(64), nullable=False, index=True)

    # Money components
    rent_amount = db.Column(db.BigInteger, nullable=False)
    deposit_amount = db.Column(db.BigInteger, nullable=False, default=0)
    platform_fee = db.Column(db.BigInteger, nullable=False)
    total_amount = db.Column(db.BigInteger, nullable=False)

    # Pricing facts (copied at creation for audit)
    transaction_type = db.Column(db.String(32), nullable=False)
    loyalty_tier = db.Column(db.String(16), nullable=False, default="bronze")
    commission_rate = db.Column(db.Numeric(6, 4), nullable=False)
    discount_rate = db.Column(db.Numeric(6, 4), nullable=False, default=0)

    settlement_mode = db.Column(db.String(16), nullable=False, default=SETTLEMENT_ESCROW)

    status = db.Column(db.String(16), nullable=False, default=PAYMENT_INITIATED, index=True)

    # Transition timestamps
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    entered_escrow_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    disputed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Settlement outcome
    payee_amount = db.Column(db.BigInteger, nullable=True)
    refund_amount = db.Column(db.BigInteger, nullable=True)
    retained_commission = db.Column(db.BigInteger, nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)

    # Gateway confirmation
    gateway = db.Column(db.String(32), nullable=True)
    gateway_transaction_id = db.Column(db.String(128), nullable=True, index=True)
    webhook_received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    # Quittance / receipt (generated after release, retried independently)
    receipt_issued_at = db.Column(db.DateTime(timezone=True), nullable=True)
    receipt_reference = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    contract = db.relationship("Contract", backref=db.backref("payments", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.deposit_amount is None:
            self.deposit_amount = 0
        expected = (self.rent_amount or 0) + self.deposit_amount + (self.platform_fee or 0)
        if self.total_amount is None:
            self.total_amount = expected
        elif self.total_amount != expected:
            raise ValidationError(
                "Payment total must equal rent + deposit + platform fee",
                total_amount=self.total_amount,
                expected=expected,
            )

    @validates("platform_fee")
    def _validate_platform_fee(self, key, value):
        # Set once at creation, never mutated
        if self.platform_fee is not None and value != self.platform_fee:
            raise ValidationError("Platform fee is immutable once set", payment_reference=self.reference)
        return value

    @property
    def escrow_amount(self) -> int:
        """Funds owed to the payee (or back to the payer); never includes the fee."""
        return self.rent_amount + self.deposit_amount

    @property
    def is_escrow_bound(self) -> bool:
        return self.settlement_mode == SETTLEMENT_ESCROW

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "contract_id": self.contract_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "rent_amount": self.rent_amount,
            "deposit_amount": self.deposit_amount,
            "platform_fee": self.platform_fee,
            "total_amount": self.total_amount,
            "transaction_type": self.transaction_type,
            "loyalty_tier": self.loyalty_tier,
            "commission_rate": str(self.commission_rate),
            "discount_rate": str(self.discount_rate),
            "settlement_mode": self.settlement_mode,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "confirmed_at": to_utc_z(self.confirmed_at),
            "entered_escrow_at": to_utc_z(self.entered_escrow_at),
            "released_at": to_utc_z(self.released_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "disputed_at": to_utc_z(self.disputed_at),
            "failed_at": to_utc_z(self.failed_at),
            "payee_amount": self.payee_amount,
            "refund_amount": self.refund_amount,
            "retained_commission": self.retained_commission,
            "gateway": self.gateway,
            "gateway_transaction_id": self.gateway_transaction_id,
            "failure_reason": self.failure_reason,
            "receipt_issued_at": to_utc_z(self.receipt_issued_at),
            "version_id": self.version_id,
        }


MOVEMENT_HOLD = "HOLD"
MOVEMENT_PAYOUT = "PAYOUT"
MOVEMENT_REFUND = "REFUND"
MOVEMENT_COMMISSION_RETAINED = "COMMISSION_RETAINED"


class EscrowMovement(db.Model):
    """
    Append-only money movements for a payment.

    MOVEMENT TYPES:
    - HOLD: Full total taken into platform custody
    - PAYOUT: rent + deposit transferred to the payee
    - REFUND: rent + deposit returned to the payer
    - COMMISSION_RETAINED: platform fee kept by the platform (release or refund)

    IMMUTABLE: Records are never updated or deleted. At most one PAYOUT or
    REFUND row exists per payment (unique index on payment_id + settles).
    """
    __tablename__ = "escrow_movements"
    __table_args__ = (
        db.Index("ix_escrow_movements_payment_occurred", "payment_id", "occurred_at"),
        db.Index(
            "uq_escrow_movements_single_settlement",
            "payment_id",
            "settles",
            unique=True,
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(24), nullable=False, index=True)
    amount = db.Column(db.BigInteger, nullable=False)

    # Beneficiary of the movement (payer, payee, or None for the platform)
    party_id = db.Column(db.String(64), nullable=True)

    # True only for the single PAYOUT/REFUND line; NULL otherwise so the
    # unique index ignores the other movement types
    settles = db.Column(db.Boolean, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    note = db.Column(db.String(255), nullable=True)

    payment = db.relationship("Payment", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "movement_type": self.movement_type,
            "amount": self.amount,
            "party_id": self.party_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
        }


TIMEOUT_PENDING = "PENDING"
TIMEOUT_DONE = "DONE"
TIMEOUT_SUPERSEDED = "SUPERSEDED"
TIMEOUT_SUPPRESSED = "SUPPRESSED"


class EscrowTimeout(db.Model):
    """
    Durable deferred check, one per escrow payment.

    WHY: The 48h auto-release must survive restarts. A recurring sweep picks up
    due rows and re-validates payment state before acting.

    STATUS:
    - PENDING: waiting for fire_at (or for a retry after failed firing)
    - DONE: sweep released the funds
    - SUPERSEDED: payment had already left ESCROW when the sweep ran
    - SUPPRESSED: an open dispute blocked auto-release; mediation settles it
    """
    __tablename__ = "escrow_timeouts"
    __table_args__ = (
        db.Index("ix_escrow_timeouts_status_fire", "status", "fire_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, unique=True)

    fire_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=TIMEOUT_PENDING)

    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", backref=db.backref("timeout", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "fire_at": to_utc_z(self.fire_at),
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_attempt_at": to_utc_z(self.last_attempt_at),
            "completed_at": to_utc_z(self.completed_at),
        }
