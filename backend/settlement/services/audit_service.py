# Overview: Service-layer operations for the transition log; append-only audit trail.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import SettlementEvent
from settlement.time_utils import utcnow
"""
Transition Log Invariants (authoritative)

- Append-only: no updates or deletes of existing events.
- No domain/business logic in the log itself.
- Events are written inside the same DB transaction as the transition they record,
  while the entity row lock is held, so sequence numbers never collide.
- occurred_at is business time; created_at is system time (DB default).
"""

ENTITY_PAYMENT = "payment"
ENTITY_CONTRACT = "contract"


def append_transition(
    *,
    entity_type: str,
    entity_id: int,
    event_type: str,
    from_state: Optional[str] = None,
    to_state: Optional[str] = None,
    actor_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> SettlementEvent:
    """
    Append one transition entry.

    Caller must hold the entity's row lock.
    """
    last_sequence = db.session.query(
        db.func.coalesce(db.func.max(SettlementEvent.sequence), 0)
    ).filter(
        SettlementEvent.entity_type == entity_type,
        SettlementEvent.entity_id == entity_id,
    ).scalar()

    ev = SettlementEvent(
        entity_type=entity_type,
        entity_id=entity_id,
        sequence=int(last_sequence) + 1,
        event_type=event_type,
        from_state=from_state,
        to_state=to_state,
        actor_id=actor_id,
        occurred_at=occurred_at or utcnow(),
        note=note,
        payload=payload,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def get_history(entity_type: str, entity_id: int) -> list[SettlementEvent]:
    """Full ordered history for one payment or contract."""
    return db.session.query(SettlementEvent).filter_by(
        entity_type=entity_type,
        entity_id=entity_id,
    ).order_by(SettlementEvent.sequence).all()
