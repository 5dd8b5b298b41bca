# Overview: Domain error taxonomy shared by the settlement services.

"""
Settlement error taxonomy.

WHY: The excluded web layer maps these to responses without knowing which
service raised them. Every error carries a stable ``code`` and a
``retryable`` flag.

- ValidationError: bad input, caller's fault, never retried
- InvalidStateTransition: logic or concurrency violation, surfaced as-is
- ExternalDependencyError: storage/notification/lock failures, retryable
- IntegrityViolation: hash mismatch on an archived artifact, never auto-corrected
- SignatureError family: user-facing signature protocol outcomes
"""

from __future__ import annotations


class SettlementError(ValueError):
    """Base class for all settlement domain errors."""

    code = "SETTLEMENT_ERROR"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **({"details": self.details} if self.details else {}),
        }


class ValidationError(SettlementError):
    code = "VALIDATION_ERROR"


class InvalidTransactionType(ValidationError):
    """Unknown transaction type. Callers validate upstream; this is a programmer error."""

    code = "INVALID_TRANSACTION_TYPE"


class InvalidStateTransition(SettlementError):
    code = "INVALID_STATE_TRANSITION"


class EscrowBlockedByDispute(InvalidStateTransition):
    code = "ESCROW_BLOCKED_BY_DISPUTE"


class ExternalDependencyError(SettlementError):
    code = "EXTERNAL_DEPENDENCY_ERROR"
    retryable = True


class LockTimeout(ExternalDependencyError):
    code = "LOCK_TIMEOUT"


class IntegrityViolation(SettlementError):
    code = "INTEGRITY_VIOLATION"


class SignatureError(SettlementError):
    code = "SIGNATURE_ERROR"


class InvalidOrExpiredCode(SignatureError):
    code = "INVALID_OR_EXPIRED_CODE"


class AlreadySigned(SignatureError):
    code = "ALREADY_SIGNED"


class Unauthorized(SignatureError):
    code = "UNAUTHORIZED"


class RetractionExpired(SignatureError):
    code = "RETRACTION_EXPIRED"
