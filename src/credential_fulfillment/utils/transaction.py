"""
Unit-of-work helpers: one transaction per engine operation, retried when the
database reports a deadlock or lock timeout.
"""

import functools
import time
from contextlib import contextmanager
from typing import Callable

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from credential_fulfillment.utils.exceptions import CredentialEngineError
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)

LOCK_ERROR_MARKERS = ("deadlock", "lock wait timeout", "database is locked", "could not obtain lock")


@contextmanager
def transaction_scope(db: Session, auto_commit: bool = True):
    """
    Commit the session when the block succeeds, roll it back when it raises.

    Usage:
        with transaction_scope(db):
            vault.store(records, context)

    The session is not closed; the caller owns its lifetime.
    """
    try:
        yield db
        if auto_commit:
            db.commit()
    except CredentialEngineError as e:
        db.rollback()
        logger.info(f"Transaction rolled back: {type(e).__name__}: {e.message}")
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Transaction rolled back due to error: {e}")
        raise


def is_lock_error(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in LOCK_ERROR_MARKERS)


def retry_on_deadlock(max_retries: int = 3, initial_backoff: float = 0.1):
    """
    Retry a unit of work that lost a lock race.

    Waits ``initial_backoff * 2 ** attempt`` between attempts. The wrapped
    callable must open its own session so each attempt starts clean.

    Args:
        max_retries: Total attempts, at least one
        initial_backoff: First wait in seconds
    """
    attempts = max(1, max_retries)

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(attempts):
                try:
                    return func(*args, **kwargs)
                except (OperationalError, DBAPIError) as e:
                    if not is_lock_error(e) or attempt == attempts - 1:
                        if attempt:
                            logger.error(f"{func.__name__} failed after {attempt + 1} attempt(s)")
                        raise

                    backoff = initial_backoff * (2 ** attempt)
                    logger.warning(
                        f"Lock conflict in {func.__name__}, retrying in {backoff:.2f}s "
                        f"(attempt {attempt + 1}/{attempts})"
                    )
                    time.sleep(backoff)

        return wrapper
    return decorator
