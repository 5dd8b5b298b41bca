from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


DISPUTE_OPEN = "OPEN"
DISPUTE_IN_MEDIATION = "IN_MEDIATION"
DISPUTE_RESOLVED = "RESOLVED"
DISPUTE_CLOSED = "CLOSED"

OPEN_DISPUTE_STATES = (DISPUTE_OPEN, DISPUTE_IN_MEDIATION)


class Dispute(db.Model):
    """
    Read model of a dispute owned by the mediation module.

    The settlement core only reads it: an open dispute referencing a payment
    suspends automatic escrow release.
    """
    __tablename__ = "disputes"
    __table_args__ = (
        db.Index("ix_disputes_payment_status", "payment_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(32), nullable=True, unique=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    contract_id = db.Column(db.Integer, db.ForeignKey("contracts.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default=DISPUTE_OPEN)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "payment_id": self.payment_id,
            "contract_id": self.contract_id,
            "status": self.status,
            "opened_at": to_utc_z(self.opened_at),
        }
