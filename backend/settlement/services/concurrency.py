# Overview: Service-layer operations for concurrency; per-entity row locks and retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LockTimeout
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    populate_existing() forces the locked SELECT to overwrite any copy already
    sitting in the session identity map, so the double-check inside the lock
    always sees the durable state.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update().populate_existing()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, lock timeouts) and StaleDataError
    (optimistic locking conflicts). When attempts are exhausted the failure
    surfaces as LockTimeout, which callers treat as retryable.
    """
    if attempts is None:
        attempts = current_app.config.get("LOCK_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LOCK_RETRY_BACKOFF", 0.1)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise LockTimeout(
                    f"Could not acquire entity lock after {attempts} attempts",
                    cause=str(exc),
                ) from exc
            current_app.logger.warning(
                "Lock contention (attempt %s/%s): %s", attempt + 1, attempts, exc
            )
            time.sleep(backoff_base * (2 ** attempt))
    raise LockTimeout("Lock retry loop exited without result")


def run_locked(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    run_with_retry that also rolls back on domain errors.

    WHY: A domain error raised inside the lock must release the row lock and
    discard partial writes before it propagates.
    """
    def _op():
        try:
            result = func()
        except (OperationalError, StaleDataError):
            raise
        except Exception:
            db.session.rollback()
            raise
        # No-op paths return without committing; end the transaction to drop the lock
        db.session.commit()
        return result

    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
