# Overview: Row locking and retry helpers for invoice balance writes.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking to an invoice read that precedes a balance write.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the invoice's
    version_id column turns a concurrent write into a StaleDataError that
    run_with_retry absorbs.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.05, retry_on=()):
    """
    Run a unit of work that commits, retrying on concurrency failures.

    The session is rolled back before every retry so the next attempt
    re-reads current balances. Any other exception rolls back and
    propagates without a retry. Extra exception types (e.g. IntegrityError
    for number allocation) can be passed in retry_on.
    """
    if attempts is None:
        attempts = current_app.config.get("PAYMENT_RETRY_ATTEMPTS", 3)
    retryable = RETRYABLE_ERRORS + tuple(retry_on)

    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Concurrent write conflict (%s), retrying attempt %d/%d",
                type(exc).__name__, attempt + 2, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            # Domain errors abort the unit of work and release any row lock
            db.session.rollback()
            raise
