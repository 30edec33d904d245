"""
Bounded retry for persistence calls.

Transient database failures (dropped connections, pool exhaustion, statement
timeouts) are retried with exponential backoff; after
``STORE_RETRY_ATTEMPTS`` attempts the failure surfaces as
``TransientStoreError``. Anything else propagates unchanged.

Usage:
    from compliance_engine.services.store_retry import run_with_store_retry

    rule = run_with_store_retry("add_rule", _add_rule, service_key, ...)
"""

import functools
import logging
import threading

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from compliance_engine.core.exceptions import TransientStoreError
from compliance_engine.models import db

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError)


def run_with_store_retry(operation: str, fn, *args, **kwargs):
    """Call ``fn(*args, **kwargs)``, retrying transient store failures.

    The session is rolled back before each retry, so ``fn`` must be safe to
    re-run from the start (every service operation that uses this helper
    re-reads what it needs and commits once at the end).

    Raises:
        TransientStoreError: after the last attempt failed.
    """
    max_attempts = current_app.config.get("STORE_RETRY_ATTEMPTS", 3)
    base_backoff = current_app.config.get("STORE_RETRY_BACKOFF_SECONDS", 0.5)

    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn(*args, **kwargs)
        except TRANSIENT_ERRORS as e:
            last_error = e
            db.session.rollback()
            logger.warning(
                "Store operation %s attempt %d/%d failed: %s",
                operation, attempt, max_attempts, e,
                extra={"event_type": "store_retry", "attempt": attempt},
            )
            if attempt < max_attempts:
                backoff = min(2 ** (attempt - 1), 4) * base_backoff
                if backoff > 0:
                    threading.Event().wait(backoff)

    logger.error(
        "Store operation %s gave up after %d attempts", operation, max_attempts,
        extra={"event_type": "store_retry_exhausted"},
    )
    raise TransientStoreError(operation, max_attempts, last_error) from last_error


def store_retry(operation: str):
    """Decorator form of :func:`run_with_store_retry`."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return run_with_store_retry(operation, fn, *args, **kwargs)
        return wrapper
    return decorator
