# Overview: Row locking and retry helpers shared by services that write under contention.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on: tuple = ()):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts), plus any extra exception types in
    retry_on (e.g. IntegrityError for sequence-number races).
    The session is rolled back before each retry.
    """
    retryable = RETRYABLE_ERRORS + tuple(retry_on)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
