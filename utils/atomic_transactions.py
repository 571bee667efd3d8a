"""Atomic transaction utilities for order, ledger and holding writes"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from services.exceptions import PaymentDomainError, StorageError

logger = logging.getLogger(__name__)


def _log_rollback(error: Exception, where: str) -> None:
    if isinstance(error, PaymentDomainError):
        logger.warning(f"↩️ {where} rolled back: {error.__class__.__name__}: {error}")
    else:
        logger.error(f"❌ {where} rolled back due to error: {error}")


def _wrap_storage_error(error: Exception) -> Exception:
    if isinstance(error, SQLAlchemyError):
        return StorageError(f"Storage failure: {error.__class__.__name__}", cause=str(error))
    return error


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Without a session, a new one is opened from ``session_factory`` (default
    ``database.SessionLocal``), committed on success and closed afterwards.
    With a provided session, nesting depth is tracked on the session and only
    the outermost block commits. Any failure rolls back; raw SQLAlchemy errors
    are re-raised as ``StorageError``. There are no automatic retries.
    """
    if session is None:
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal

        new_session = session_factory()
        logger.debug("Created new sync session for atomic transaction")
        try:
            yield new_session
            new_session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            new_session.rollback()
            _log_rollback(e, "Sync transaction")
            wrapped = _wrap_storage_error(e)
            if wrapped is e:
                raise
            raise wrapped from e
        finally:
            new_session.close()
        return

    logger.debug("Using provided sync session for atomic transaction")
    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
    except Exception as e:
        session.rollback()
        _log_rollback(e, f"Sync transaction (depth: {transaction_depth + 1})")
        wrapped = _wrap_storage_error(e)
        if wrapped is e:
            raise
        raise wrapped from e
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))
