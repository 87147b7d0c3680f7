"""Atomic transaction utilities for escrow and repository-transfer transitions"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from utils.marketplace_errors import ConcurrentModificationError, MarketplaceError, NotFoundError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for one atomic database transaction with rollback.

    Commits when the block exits cleanly, rolls back on any exception and
    re-raises it. Version-counter conflicts surface as
    ConcurrentModificationError.
    """
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    session = session_factory()
    try:
        yield session
        session.commit()
        logger.debug("Atomic transaction committed successfully")
    except StaleDataError as e:
        session.rollback()
        logger.warning(f"⚠️ STALE_WRITE: Concurrent modification detected, rolled back: {e}")
        raise ConcurrentModificationError(str(e)) from e
    except MarketplaceError as e:
        session.rollback()
        logger.info(f"Transaction rolled back: {type(e).__name__}: {e}")
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Transaction rolled back due to error: {e}")
        raise
    finally:
        session.close()


@contextmanager
def locked_transaction_operation(
    transaction_id: str, session: Session, timeout_seconds: int = 30
) -> Generator[Any, None, None]:
    """
    Load a marketplace transaction with a row-level lock held until the
    surrounding database transaction ends.

    Every transition re-reads current state through this so that decisions
    are never made on a stale read. Retries lock acquisition on deadlock.
    """
    from models import Transaction

    start_time = time.time()
    max_retries = 3
    retry_count = 0

    while True:
        if time.time() - start_time > timeout_seconds:
            raise TimeoutError(
                f"Lock acquisition timeout for transaction {transaction_id} after {timeout_seconds}s"
            )
        try:
            transaction = (
                session.query(Transaction)
                .filter(Transaction.id == transaction_id)
                .with_for_update(nowait=False)
                .first()
            )
            break
        except OperationalError as e:
            message = str(e).lower()
            if "deadlock detected" in message or "lock_timeout" in message:
                retry_count += 1
                if retry_count < max_retries:
                    backoff_time = 0.1 * (2 ** retry_count)
                    logger.warning(
                        f"Deadlock detected for transaction {transaction_id}, "
                        f"retrying ({retry_count}/{max_retries}) after {backoff_time}s"
                    )
                    session.rollback()
                    time.sleep(backoff_time)
                    continue
                logger.error(f"Max retries exceeded for transaction {transaction_id} deadlock")
            else:
                logger.error(f"Database operational error in locked transaction operation: {e}")
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error in locked transaction operation: {e}")
            raise

    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found", "Transaction not found")

    logger.debug(f"Acquired lock for transaction {transaction_id}")
    yield transaction


def lock_repository_transfer(session: Session, transaction_id: str):
    """Row-lock the transfer record for a transaction (None when absent)"""
    from models import RepositoryTransfer

    return (
        session.query(RepositoryTransfer)
        .filter(RepositoryTransfer.transaction_id == transaction_id)
        .with_for_update(nowait=False)
        .first()
    )
