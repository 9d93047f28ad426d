"""Payment ledger writes.

Idempotency strategy:
- Insert keyed on the "primary" Stripe id we have (PaymentIntent over Checkout Session).
- On a unique conflict the first committed row wins; amount and currency of a
  repeat call are ignored.
- When both ids are supplied and the conflict is on the *other* index, the
  existing row must agree on the PaymentIntent id, otherwise the ledger has an
  identifier conflict that needs a human.

DB requirements:
- UNIQUE payments.stripe_payment_intent_id WHERE NOT NULL
- UNIQUE payments.stripe_checkout_session_id WHERE NOT NULL
- CHECK at least one of the two stripe ids exists
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ValidationError, IdentifierConflictError, StoreIOError
from app.core.logging import ledger_logger
from app.core.metrics import payments_recorded_counter
from app.db.idempotency import insert_or_fetch, is_unique_violation
from app.models.payment import Payment, PAYMENT_STATUSES

logger = ledger_logger

DEFAULT_CURRENCIES = frozenset({"gbp", "eur", "usd"})

MAX_SITE_LEN = 32
MAX_STRIPE_ID_LEN = 128
MAX_SUBMISSION_REF_LEN = 64
MAX_RAW_EVENT_BYTES = 12_000
RAW_EVENT_KEPT_KEYS = 12

PAYMENT_INTENT_RE = re.compile(r"^pi_[A-Za-z0-9]+$")
CHECKOUT_SESSION_RE = re.compile(r"^cs_[A-Za-z0-9_]+$")
CUSTOMER_RE = re.compile(r"^cus_[A-Za-z0-9]+$")


@dataclass
class PaymentInput:
    site: str
    amount_cents: int
    currency: str
    status: str
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    form_submission_id: Optional[str] = None
    # Minimal JSON snapshot only, never the full Stripe event
    raw_event: Optional[Dict[str, Any]] = None


def clean_string(value: Any, max_len: int) -> Optional[str]:
    """Trim a string and clamp it to ``max_len``; non-strings and blanks become None"""
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value:
        return None
    return value[:max_len]


def clamp_raw_event(obj: Optional[Dict[str, Any]], max_bytes: int = MAX_RAW_EVENT_BYTES) -> Optional[Dict[str, Any]]:
    """Bound the audit snapshot stored with a payment.

    Oversized snapshots keep the first few keys in insertion order so the same
    input always produces the same stored value. The ledger never rejects a
    payment because of its snapshot.
    """
    if obj is None:
        return None

    safe = dict(obj)
    try:
        encoded = json.dumps(safe)
    except (TypeError, ValueError):
        return {"truncated": True, "note": "raw_event not serializable"}

    size = len(encoded.encode("utf-8"))
    if size <= max_bytes:
        return safe

    kept_keys = list(safe.keys())[:RAW_EVENT_KEPT_KEYS]
    return {
        "truncated": True,
        "bytes": size,
        "kept_keys": kept_keys,
        "snapshot": {k: safe[k] for k in kept_keys},
    }


def _validate(payment: PaymentInput, currencies: FrozenSet[str]) -> Dict[str, Any]:
    """Validate and normalise a PaymentInput into column values"""
    amount = payment.amount_cents
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("amount_cents must be an integer")
    if amount <= 0:
        raise ValidationError("amount_cents must be > 0")

    currency = payment.currency.lower() if isinstance(payment.currency, str) else ""
    if not re.fullmatch(r"[a-z]{3}", currency) or currency not in currencies:
        raise ValidationError(f"Unsupported currency: {payment.currency!r}")

    if payment.status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status: {payment.status!r}")

    pi = clean_string(payment.stripe_payment_intent_id, MAX_STRIPE_ID_LEN)
    cs = clean_string(payment.stripe_checkout_session_id, MAX_STRIPE_ID_LEN)
    cus = clean_string(payment.stripe_customer_id, MAX_STRIPE_ID_LEN)

    if not pi and not cs:
        raise ValidationError("stripe_payment_intent_id or stripe_checkout_session_id is required")
    if pi and not PAYMENT_INTENT_RE.match(pi):
        raise ValidationError("Invalid stripe_payment_intent_id format")
    if cs and not CHECKOUT_SESSION_RE.match(cs):
        raise ValidationError("Invalid stripe_checkout_session_id format")
    if cus and not CUSTOMER_RE.match(cus):
        raise ValidationError("Invalid stripe_customer_id format")

    return {
        "site": (clean_string(payment.site, MAX_SITE_LEN) or "unknown").lower(),
        "form_submission_id": clean_string(payment.form_submission_id, MAX_SUBMISSION_REF_LEN),
        "amount_cents": amount,
        "currency": currency,
        "stripe_payment_intent_id": pi,
        "stripe_checkout_session_id": cs,
        "stripe_customer_id": cus,
        "status": payment.status,
    }


def get_payment_by_intent(db: Session, payment_intent_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.stripe_payment_intent_id == payment_intent_id).first()


def get_payment_by_session(db: Session, checkout_session_id: str) -> Optional[Payment]:
    return db.query(Payment).filter(Payment.stripe_checkout_session_id == checkout_session_id).first()


def _link_identifier(db: Session, payment: Payment, column: str, value: str) -> Payment:
    """Fill a missing Stripe id on an existing row (conditional on it still being NULL)"""
    col = getattr(Payment, column)
    stmt = (
        update(Payment)
        .where(Payment.id == payment.id, col.is_(None))
        .values({column: value})
        .execution_options(synchronize_session=False)
    )
    try:
        db.execute(stmt)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if is_unique_violation(e):
            raise IdentifierConflictError(
                f"Stripe identifiers conflict: {column}={value} already belongs to another payment"
            ) from e
        raise StoreIOError(f"payments link {column} rejected by database constraint") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreIOError(f"payments link {column} failed: {e.__class__.__name__}") from e

    db.expire(payment)
    db.refresh(payment)
    if getattr(payment, column) != value:
        raise IdentifierConflictError(
            f"Stripe identifiers conflict: payment {payment.id} has a different {column}"
        )
    logger.info(f"Linked {column}={value} to payment {payment.id}")
    return payment


def _reconcile(db: Session, values: Dict[str, Any]) -> Payment:
    """Resolve a unique conflict into the row that already holds these identifiers"""
    pi = values["stripe_payment_intent_id"]
    cs = values["stripe_checkout_session_id"]

    primary = get_payment_by_intent(db, pi) if pi else get_payment_by_session(db, cs)
    if primary is not None:
        if pi and cs:
            if primary.stripe_checkout_session_id is None:
                return _link_identifier(db, primary, "stripe_checkout_session_id", cs)
            if primary.stripe_checkout_session_id != cs:
                raise IdentifierConflictError(
                    "Stripe identifiers conflict: payment_intent_id is linked to a different checkout_session_id"
                )
        return primary

    # Conflict was on the secondary index (only possible when both ids were given)
    secondary = get_payment_by_session(db, cs) if (pi and cs) else None
    if secondary is None:
        raise StoreIOError("payments conflict reported but no matching row found")
    if secondary.stripe_payment_intent_id and secondary.stripe_payment_intent_id != pi:
        raise IdentifierConflictError(
            "Stripe identifiers conflict: checkout_session_id is linked to a different payment_intent_id"
        )
    if secondary.stripe_payment_intent_id is None:
        return _link_identifier(db, secondary, "stripe_payment_intent_id", pi)
    return secondary


def record_payment(
    db: Session,
    payment: PaymentInput,
    currencies: FrozenSet[str] = DEFAULT_CURRENCIES,
    max_raw_event_bytes: int = MAX_RAW_EVENT_BYTES,
) -> Payment:
    """Create a payment record idempotently.

    Args:
        db: Database session
        payment: Payment details
        currencies: Supported lowercase currency codes
        max_raw_event_bytes: Size cap for the stored raw_event snapshot

    Returns:
        The stored Payment (new, or the one that already existed)

    Raises:
        ValidationError: amount/currency/status/identifier problems
        IdentifierConflictError: the two Stripe ids belong to different rows
        StoreIOError: database failure
    """
    values = _validate(payment, currencies)
    row = Payment(raw_event=clamp_raw_event(payment.raw_event, max_raw_event_bytes), **values)

    stored, inserted = insert_or_fetch(db, row, lambda: None, what="payments insert")
    if inserted:
        payments_recorded_counter.labels(result="created").inc()
        logger.info(
            f"Recorded payment {stored.id}: {values['amount_cents']} {values['currency']} "
            f"(pi={values['stripe_payment_intent_id']}, cs={values['stripe_checkout_session_id']})"
        )
        return stored

    try:
        existing = _reconcile(db, values)
    except IdentifierConflictError:
        payments_recorded_counter.labels(result="conflict").inc()
        logger.error(
            f"Ledger identifier conflict for site={values['site']} "
            f"pi={values['stripe_payment_intent_id']} cs={values['stripe_checkout_session_id']}"
        )
        raise
    except SQLAlchemyError as e:
        raise StoreIOError(f"payments fetch after conflict failed: {e.__class__.__name__}") from e

    payments_recorded_counter.labels(result="deduped").inc()
    logger.info(f"Payment already recorded as {existing.id}, ignoring repeat write")
    return existing
