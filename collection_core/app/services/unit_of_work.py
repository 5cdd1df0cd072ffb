"""
Transaction boundary for multi-table writes.

Finalize and rectify stage ledger, item, purchase order and order-flag writes
on one session and commit them together. Any exception rolls the whole set
back; there is no path that commits a partial sequence.
"""

from contextlib import contextmanager

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..logging_config import get_logger
from .exceptions import CollectionError, StateConflictError, TransactionFailure

logger = get_logger("services.unit_of_work")


@contextmanager
def unit_of_work(db: Session, operation: str, **context):
    """
    Run a block of writes as one atomic transaction.

    Usage:
        with unit_of_work(db, "wcn_finalize", order_id=order_id):
            ...stage writes on db...

    Domain errors (CollectionError) are re-raised unchanged after rollback.
    A concurrent update of a versioned row becomes StateConflictError.
    Anything else is logged and surfaced as TransactionFailure.
    """
    try:
        yield db
        db.commit()
    except CollectionError:
        db.rollback()
        raise
    except StaleDataError as exc:
        db.rollback()
        logger.warning(
            "transaction_conflict",
            extra={"operation": operation, **context},
        )
        raise StateConflictError(
            "The record was modified by another request; reload and retry"
        ) from exc
    except Exception as exc:
        db.rollback()
        logger.exception(
            "transaction_rolled_back",
            extra={"operation": operation, **context},
        )
        raise TransactionFailure(f"{operation} failed and was rolled back") from exc
