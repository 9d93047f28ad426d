"""Insert-or-fetch primitive shared by the event journal, ledger and submission stores.

All three stores follow the same shape: try to insert, and if the database
rejects the row on a unique constraint, read back whichever row won. The
caller decides what the existing row means (dedup, terminal state, conflict).
"""
import logging
from typing import Callable, Optional, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StoreIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNIQUE_VIOLATION_SQLSTATE = "23505"


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when an IntegrityError was caused by a unique constraint/index"""
    orig = getattr(exc, "orig", None)
    # psycopg2 exposes pgcode, psycopg 3 exposes sqlstate
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code:
        return code == UNIQUE_VIOLATION_SQLSTATE
    message = str(orig if orig is not None else exc).lower()
    return "unique constraint" in message or "duplicate key" in message


def commit_or_raise(db: Session, what: str) -> None:
    """Commit the session, translating driver failures into StoreIOError"""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database commit failed for {what}: {e}")
        raise StoreIOError(f"{what} failed: {e.__class__.__name__}") from e


def insert_or_fetch(
    db: Session,
    row: T,
    fetch_existing: Callable[[], Optional[T]],
    what: str,
) -> Tuple[Optional[T], bool]:
    """Insert ``row``; on a unique conflict return the row that already exists.

    Returns ``(row, inserted)``. When the insert lost a race, ``inserted`` is
    False and the first element is whatever ``fetch_existing`` finds, which may
    be None if the conflicting row is not reachable through that lookup.

    The session is committed on success; any other pending work in the session
    is committed with it, so callers keep one logical write per call.

    Raises:
        StoreIOError: non-unique integrity failures and driver errors
    """
    db.add(row)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if not is_unique_violation(e):
            logger.error(f"{what} rejected by database constraint: {e.orig}")
            raise StoreIOError(f"{what} rejected by database constraint") from e
        logger.debug(f"{what} hit unique constraint, fetching existing row")
        try:
            return fetch_existing(), False
        except SQLAlchemyError as fetch_error:
            raise StoreIOError(f"{what} fetch after conflict failed") from fetch_error
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"{what} insert failed: {e}")
        raise StoreIOError(f"{what} insert failed: {e.__class__.__name__}") from e

    db.refresh(row)
    return row, True
