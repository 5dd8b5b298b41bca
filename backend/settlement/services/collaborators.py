# Overview: Narrow interfaces to external collaborators plus default implementations.

"""
External Collaborators

WHY: Notification delivery, object storage, OTP delivery, dispute management,
receipt (quittance) rendering and loyalty badges belong to other parts of the
marketplace. The settlement core only talks to them through these protocols.

Implementations are injected at app creation:

    create_app(collaborators=Collaborators(storage=S3Storage(...)))

and read back with get_collaborators() inside an app context. Defaults are
suitable for development and tests (local disk, in-memory OTPs).
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol, runtime_checkable

from flask import current_app

from ..errors import ExternalDependencyError
from ..extensions import db
from ..models import Dispute
from ..models.disputes import OPEN_DISPUTE_STATES
from settlement.time_utils import to_utc_z, utcnow


EXTENSION_KEY = "settlement"


# =============================================================================
# PROTOCOLS
# =============================================================================

@runtime_checkable
class NotificationDispatcher(Protocol):
    def notify(self, party_id: str, event_type: str, payload: dict) -> None: ...


@runtime_checkable
class ObjectStorage(Protocol):
    def get(self, path: str) -> bytes: ...

    def put(self, path: str, data: bytes) -> bool: ...

    def exists(self, path: str) -> bool: ...


@dataclass(frozen=True)
class OtpChallenge:
    """What the web layer needs to prompt the signer; never contains the code."""
    scope: tuple[str, str]
    expires_at: datetime
    channel: str = "sms"

    def to_dict(self) -> dict:
        return {
            "contract_id": self.scope[0],
            "party_id": self.scope[1],
            "expires_at": to_utc_z(self.expires_at),
            "channel": self.channel,
        }


@runtime_checkable
class OtpValidator(Protocol):
    def issue(self, scope: tuple[str, str]) -> OtpChallenge: ...

    def validate(self, scope: tuple[str, str], code: str) -> bool: ...


@runtime_checkable
class DisputeLookup(Protocol):
    def has_open_dispute(self, payment_id: int) -> bool: ...


@runtime_checkable
class ReceiptGenerator(Protocol):
    def generate(self, payment) -> str: ...


@runtime_checkable
class LoyaltyTierLookup(Protocol):
    def tier_for(self, party_id: str) -> str: ...


# =============================================================================
# DEFAULT IMPLEMENTATIONS
# =============================================================================

class LoggingNotificationDispatcher:
    """Development dispatcher: records the notification in the app log only (keys, not values)."""

    def notify(self, party_id: str, event_type: str, payload: dict) -> None:
        current_app.logger.info("notify party=%s event=%s keys=%s", party_id, event_type, sorted(payload))


class LocalObjectStorage:
    """Filesystem-backed storage rooted at a directory (relative paths only)."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ExternalDependencyError("Storage path escapes storage root", path=path)
        return target

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise ExternalDependencyError(f"Storage read failed: {path}", cause=str(exc)) from exc

    def put(self, path: str, data: bytes) -> bool:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise ExternalDependencyError(f"Storage write failed: {path}", cause=str(exc)) from exc
        return True

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()


class InMemoryOtpValidator:
    """
    Single-use codes bound to (contract, party), expiring after ttl_seconds.

    Only code hashes are kept. The dispatcher (if any) delivers the clear code.
    """

    def __init__(self, ttl_seconds: int = 300, dispatcher: NotificationDispatcher | None = None):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.dispatcher = dispatcher
        self._codes: dict[tuple[str, str], tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _hash(code: str) -> str:
        return hashlib.sha256(code.encode("utf-8")).hexdigest()

    def issue(self, scope: tuple[str, str]) -> OtpChallenge:
        code = f"{secrets.randbelow(10**6):06d}"
        expires_at = utcnow() + self.ttl
        with self._lock:
            self._codes[scope] = (self._hash(code), expires_at)
        if self.dispatcher is not None:
            self.dispatcher.notify(scope[1], "signature.otp", {"contract_id": scope[0], "code": code})
        return OtpChallenge(scope=scope, expires_at=expires_at)

    def validate(self, scope: tuple[str, str], code: str) -> bool:
        with self._lock:
            entry = self._codes.get(scope)
            if entry is None:
                return False
            code_hash, expires_at = entry
            if utcnow() >= expires_at:
                del self._codes[scope]
                return False
            if not hmac.compare_digest(code_hash, self._hash(code or "")):
                return False
            del self._codes[scope]
            return True


class DatabaseDisputeLookup:
    """Reads the disputes table maintained by the mediation module."""

    def has_open_dispute(self, payment_id: int) -> bool:
        return db.session.query(
            db.session.query(Dispute).filter(
                Dispute.payment_id == payment_id,
                Dispute.status.in_(OPEN_DISPUTE_STATES),
            ).exists()
        ).scalar()


class LoggingReceiptGenerator:
    """Placeholder quittance generator: returns a deterministic receipt reference."""

    def generate(self, payment) -> str:
        receipt_ref = f"QUIT-{payment.reference}"
        current_app.logger.info("Receipt %s generated for payment %s", receipt_ref, payment.reference)
        return receipt_ref


class DefaultTierLookup:
    """Everyone is bronze unless the certification module says otherwise."""

    def __init__(self, tiers: dict[str, str] | None = None):
        self.tiers = dict(tiers or {})

    def tier_for(self, party_id: str) -> str:
        return self.tiers.get(party_id, "bronze")


# =============================================================================
# REGISTRY
# =============================================================================

@dataclass
class Collaborators:
    notifications: NotificationDispatcher | None = None
    storage: ObjectStorage | None = None
    otp: OtpValidator | None = None
    disputes: DisputeLookup | None = None
    receipts: ReceiptGenerator | None = None
    tiers: LoyaltyTierLookup | None = None

    def with_defaults(self, config) -> "Collaborators":
        notifications = self.notifications or LoggingNotificationDispatcher()
        return Collaborators(
            notifications=notifications,
            storage=self.storage or LocalObjectStorage(config["ARCHIVE_STORAGE_ROOT"]),
            otp=self.otp or InMemoryOtpValidator(config["OTP_TTL_SECONDS"], dispatcher=notifications),
            disputes=self.disputes or DatabaseDisputeLookup(),
            receipts=self.receipts or LoggingReceiptGenerator(),
            tiers=self.tiers or DefaultTierLookup(),
        )


def get_collaborators() -> Collaborators:
    return current_app.extensions[EXTENSION_KEY]["collaborators"]


def notify_safely(party_id: str | None, event_type: str, payload: dict) -> None:
    """
    Fire-and-forget notification.

    Failures are logged and never propagate into settlement logic.
    """
    if not party_id:
        return
    try:
        get_collaborators().notifications.notify(party_id, event_type, payload)
    except Exception:
        current_app.logger.warning(
            "Notification %s to party %s failed", event_type, party_id, exc_info=True
        )
