"""
Transaction helpers for the shop settings and verification tables (SQLAlchemy)
Commit on success, rollback and re-raise on failure
"""
import time
from functools import wraps
from typing import Callable
import logging

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def atomic_transaction(func: Callable) -> Callable:
    """
    Decorator that runs a database function as a single transaction

    Usage:
        @atomic_transaction
        def upsert_linkage(db: Session, shop: str, ...):
            ...

    The decorated function must accept 'db: Session' as first parameter
    """
    @wraps(func)
    def wrapper(db: Session, *args, **kwargs):
        try:
            result = func(db, *args, **kwargs)
            db.commit()
            logger.debug(f"Transaction committed: {func.__name__}")
            return result
        except Exception as e:
            db.rollback()
            logger.error(f"Transaction rolled back: {func.__name__} - Error: {e}")
            raise

    return wrapper


class TransactionContext:
    """
    Context manager for explicit transaction control

    Usage:
        with TransactionContext(db) as tx:
            tx.session.add(row)
            # commits on exit, rolls back if an exception escapes
    """

    def __init__(self, session: Session):
        self.session = session
        self._committed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self.session.rollback()
            logger.error(f"Transaction rolled back due to: {exc_val}")
            return False
        if not self._committed:
            self.session.commit()
            self._committed = True
        return False

    def commit(self):
        if not self._committed:
            self.session.commit()
            self._committed = True

    def rollback(self):
        self.session.rollback()
        logger.warning("Manual rollback executed")


def retry_on_conflict(max_attempts: int = 3):
    """
    Retry a transactional function when a concurrent writer got there first

    Covers unique-key races (two requests inserting the same email at once)
    and database deadlocks. Place it outside @atomic_transaction so every
    attempt starts from a rolled back session.

    Usage:
        @retry_on_conflict(max_attempts=3)
        @atomic_transaction
        def replace_code(db: Session, ...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            delay = 0.05

            while True:
                try:
                    return func(*args, **kwargs)
                except (IntegrityError, OperationalError) as e:
                    if isinstance(e, OperationalError) and "deadlock" not in str(e).lower():
                        raise
                    attempt += 1
                    if attempt >= max_attempts:
                        logger.error(f"Max retry attempts ({max_attempts}) reached for {func.__name__}")
                        raise
                    logger.warning(f"Write conflict in {func.__name__}, retrying (attempt {attempt}/{max_attempts})")
                    time.sleep(delay)
                    delay *= 2

        return wrapper
    return decorator
