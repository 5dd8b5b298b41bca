from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


class SettlementEvent(db.Model):
    """
    Append-only transition log for payments and contracts.

    WHY: State history must be reconstructible for audit. Rows are appended in
    the same DB transaction as the transition they record; nothing is updated
    or deleted.

    sequence is monotonic per (entity_type, entity_id).
    """
    __tablename__ = "settlement_events"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_settlement_events_entity_seq"),
        db.Index("ix_settlement_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # What it refers to (generic pointer)
    entity_type = db.Column(db.String(16), nullable=False)  # payment, contract
    entity_id = db.Column(db.Integer, nullable=False)
    sequence = db.Column(db.Integer, nullable=False)

    # What happened
    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g., payment.held, contract.locked
    from_state = db.Column(db.String(24), nullable=True)
    to_state = db.Column(db.String(24), nullable=True)

    actor_id = db.Column(db.String(64), nullable=True)

    # Business vs system time
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "note": self.note,
            "payload": self.payload,
        }
