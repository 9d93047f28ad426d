"""Stripe event journal: exclusive claim and terminal marking per event id.

Exclusivity comes only from the ``stripe_events`` primary key and conditional
updates; there is no in-process lock. Status moves::

    processing -> succeeded | failed
    failed     -> processing          (re-claim on redelivery)
    processing -> processing          (re-claim once claimed_at is older than the TTL)

``succeeded`` is absorbing.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import StoreIOError
from app.db.idempotency import insert_or_fetch, commit_or_raise
from app.models.stripe_event import (
    StripeEvent,
    STRIPE_EVENT_PROCESSING,
    STRIPE_EVENT_SUCCEEDED,
    STRIPE_EVENT_FAILED,
    STRIPE_EVENT_STATUSES,
)

logger = logging.getLogger(__name__)

MAX_LAST_ERROR_LEN = 1000
# A conditional re-claim can lose to another worker; re-read and branch again this many times
MAX_RECLAIM_ROUNDS = 3


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_SUCCEEDED = "already_succeeded"
    ALREADY_PROCESSING = "already_processing"


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    row: StripeEvent
    first_seen: bool = False
    # attempts value of the claim we hold; terminal marks are conditional on it
    token: Optional[int] = None

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_stripe_event(db: Session, event_id: str) -> Optional[StripeEvent]:
    try:
        return db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    except SQLAlchemyError as e:
        raise StoreIOError(f"stripe_events fetch failed: {e.__class__.__name__}") from e


def is_claim_stale(row: StripeEvent, claim_ttl_seconds: Optional[int], now: Optional[datetime] = None) -> bool:
    """True when a processing row has been held longer than the claim TTL"""
    if row.status != STRIPE_EVENT_PROCESSING or not claim_ttl_seconds:
        return False
    claimed_at = _as_utc(row.claimed_at)
    if claimed_at is None:
        return True
    return claimed_at < (now or _utcnow()) - timedelta(seconds=claim_ttl_seconds)


def _reclaim(
    db: Session,
    event_id: str,
    observed_status: str,
    observed_attempts: int,
    claim_ttl_seconds: Optional[int],
) -> bool:
    """Conditionally move a failed or stale row back to processing.

    The update only matches the exact state we read (status and attempts), so
    at most one concurrent caller gets rowcount 1 and that is an exclusive claim.
    """
    now = _utcnow()
    stmt = update(StripeEvent).where(
        StripeEvent.event_id == event_id,
        StripeEvent.status == observed_status,
        StripeEvent.attempts == observed_attempts,
    )
    if observed_status == STRIPE_EVENT_PROCESSING:
        stmt = stmt.where(StripeEvent.claimed_at < now - timedelta(seconds=claim_ttl_seconds))
    stmt = stmt.values(
        status=STRIPE_EVENT_PROCESSING,
        processed_at=None,
        last_error=None,
        claimed_at=now,
        attempts=observed_attempts + 1,
    ).execution_options(synchronize_session=False)

    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreIOError(f"stripe_events reclaim failed: {e.__class__.__name__}") from e
    return result.rowcount == 1


def claim_stripe_event(
    db: Session,
    event_id: str,
    event_type: str,
    livemode: bool = False,
    created: Optional[int] = None,
    claim_ttl_seconds: Optional[int] = None,
) -> ClaimResult:
    """Claim a Stripe event for exclusive processing.

    Args:
        db: Database session
        event_id: Stripe event id (evt_...)
        event_type: Stripe event type
        livemode: Stripe livemode flag
        created: Stripe creation timestamp (epoch seconds)
        claim_ttl_seconds: processing rows older than this are re-claimable;
            None keeps them locked until repaired by hand

    Returns:
        ClaimResult; only CLAIMED grants the right to perform side effects,
        and its token must be passed back to mark_stripe_event_status

    Raises:
        StoreIOError: database failure, or a conflict whose row cannot be read back
    """
    row = StripeEvent(
        event_id=event_id,
        type=event_type,
        status=STRIPE_EVENT_PROCESSING,
        livemode=bool(livemode),
        created=created if isinstance(created, int) else None,
        processed_at=None,
        last_error=None,
        claimed_at=_utcnow(),
        attempts=1,
    )
    existing, inserted = insert_or_fetch(
        db, row, lambda: get_stripe_event(db, event_id), what="stripe_events insert"
    )
    if inserted:
        return ClaimResult(ClaimOutcome.CLAIMED, existing, first_seen=True, token=1)

    for _ in range(MAX_RECLAIM_ROUNDS):
        if existing is None:
            # Duplicate reported but nothing to read; let the sender retry
            raise StoreIOError(f"stripe_event_missing_after_duplicate:{event_id}")

        if existing.status == STRIPE_EVENT_SUCCEEDED:
            return ClaimResult(ClaimOutcome.ALREADY_SUCCEEDED, existing)

        if existing.status == STRIPE_EVENT_PROCESSING and not is_claim_stale(existing, claim_ttl_seconds):
            return ClaimResult(ClaimOutcome.ALREADY_PROCESSING, existing)

        if existing.status == STRIPE_EVENT_PROCESSING:
            logger.warning(
                f"Stripe event {event_id} stuck in processing since {existing.claimed_at}, re-claiming"
            )

        observed_attempts = existing.attempts
        if _reclaim(db, event_id, existing.status, observed_attempts, claim_ttl_seconds):
            db.expire(existing)
            refreshed = get_stripe_event(db, event_id)
            return ClaimResult(ClaimOutcome.CLAIMED, refreshed, first_seen=False, token=observed_attempts + 1)

        # Another worker moved the row first
        logger.info(f"Lost re-claim race for stripe event {event_id}, re-reading")
        db.expire(existing)
        existing = get_stripe_event(db, event_id)

    return ClaimResult(ClaimOutcome.ALREADY_PROCESSING, existing)


def mark_stripe_event_status(
    db: Session,
    event_id: str,
    status: str,
    last_error: Optional[str] = None,
    claim_token: Optional[int] = None,
) -> bool:
    """Record a status transition for a claimed event.

    With a claim_token the update only applies while that claim is still the
    current one; a worker whose stale claim was taken over cannot overwrite
    the new holder's row.

    Returns:
        True when the row was updated

    Raises:
        ValueError: unknown status
        StoreIOError: database failure
    """
    if status not in STRIPE_EVENT_STATUSES:
        raise ValueError(f"Unknown stripe event status: {status}")

    if last_error is not None:
        last_error = last_error[:MAX_LAST_ERROR_LEN]

    stmt = (
        update(StripeEvent)
        .where(StripeEvent.event_id == event_id)
        # succeeded is absorbing
        .where(StripeEvent.status != STRIPE_EVENT_SUCCEEDED)
    )
    if claim_token is not None:
        stmt = stmt.where(StripeEvent.attempts == claim_token)
    stmt = stmt.values(
        status=status, processed_at=_utcnow(), last_error=last_error
    ).execution_options(synchronize_session=False)

    try:
        result = db.execute(stmt)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreIOError(f"stripe_events update failed: {e.__class__.__name__}") from e
    commit_or_raise(db, "stripe_events update")

    if result.rowcount == 0 and claim_token is not None:
        logger.warning(
            f"Lost claim on stripe event {event_id} (token={claim_token}); not marking {status}"
        )
    return result.rowcount == 1
