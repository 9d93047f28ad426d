"""Stripe webhook event processing.

Idempotent via the stripe_events journal plus the payments unique constraints:

1. claim the event id (only one worker gets CLAIMED)
2. perform the business writes for the event type
3. notify the CRM (best-effort)
4. mark the journal row succeeded

Any failure after the claim marks the row failed, so the next delivery can
re-claim it, and the original exception is re-raised for the boundary to turn
into a 5xx.
"""
import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.core.config import ProcessorConfig
from app.core.errors import AlreadyProcessingError, ValidationError
from app.core.metrics import stripe_events_counter
from app.models.stripe_event import STRIPE_EVENT_SUCCEEDED, STRIPE_EVENT_FAILED
from app.schemas.stripe_events import VerifiedEvent, PaymentIntentPayload, EventResult
from app.services.event_journal import ClaimOutcome, claim_stripe_event, mark_stripe_event_status
from app.services.form_service import mark_submission_converted
from app.services.notifier import CrmNotification, CrmNotifier
from app.services.payment_service import PaymentInput, clean_string, record_payment
from app.utils.stripe_objects import as_plain_dict, get_stripe_id

logger = logging.getLogger(__name__)

EventHandler = Callable[[Session, VerifiedEvent, ProcessorConfig, CrmNotifier], Optional[str]]


def _error_message(err: BaseException) -> str:
    message = str(err)
    return message or err.__class__.__name__


def parse_event(event: Any) -> VerifiedEvent:
    """Normalise a StripeObject or plain mapping into a VerifiedEvent.

    Raises:
        ValidationError: the envelope lacks id/type or has the wrong shapes
    """
    raw = as_plain_dict(event)
    data = as_plain_dict(raw.get("data"))
    if "object" in data:
        data["object"] = as_plain_dict(data["object"]) or data["object"]
    raw["data"] = data
    try:
        return VerifiedEvent.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError("Invalid Stripe event envelope", details=e.errors()) from e


# ============================================================================
# EVENT HANDLERS
# ============================================================================

def _minor_units(payload: PaymentIntentPayload) -> int:
    """Amount in integer minor units, preferring amount_received over amount"""
    amount = payload.amount_received if isinstance(payload.amount_received, (int, float)) else payload.amount
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Invalid amount")
    # Stripe always sends integers; 40.5 and 4000.0 are both malformed
    if isinstance(amount, float):
        raise ValidationError("Stripe amount is not integer cents")
    return amount


def handle_payment_intent_succeeded(
    db: Session,
    event: VerifiedEvent,
    config: ProcessorConfig,
    notifier: CrmNotifier,
) -> Optional[str]:
    """Record the payment, convert the linked submission, sync the CRM.

    Returns the payment id.
    """
    obj = as_plain_dict(event.object)
    if not obj:
        raise ValidationError("Invalid payment_intent payload")
    try:
        pi = PaymentIntentPayload.model_validate(obj)
    except PydanticValidationError as e:
        raise ValidationError("Invalid payment_intent payload", details=e.errors()) from e

    amount_cents = _minor_units(pi)
    currency = pi.currency.lower()
    if currency not in config.supported_currencies:
        raise ValidationError(f"Unsupported currency: {currency}")

    metadata = pi.metadata
    form_submission_id = clean_string(metadata.get("form_submission_id"), 64)
    site = (clean_string(metadata.get("site"), 32) or "unknown").lower()
    form_slug = clean_string(metadata.get("form_slug"), 64)
    pricing_tier = clean_string(metadata.get("pricing_tier"), 64)

    payment = record_payment(
        db,
        PaymentInput(
            site=site,
            form_submission_id=form_submission_id,
            amount_cents=amount_cents,
            currency=currency,
            stripe_payment_intent_id=pi.id,
            stripe_customer_id=get_stripe_id(pi.customer),
            status="succeeded",
            raw_event={
                "id": event.id,
                "type": event.type,
                "created": event.created,
                "livemode": event.livemode,
                "payment_intent_id": pi.id,
            },
        ),
        currencies=config.supported_currencies,
        max_raw_event_bytes=config.max_raw_event_bytes,
    )

    if form_submission_id:
        mark_submission_converted(db, form_submission_id)

    notifier.notify(CrmNotification(
        eventId=event.id,
        eventType=event.type,
        site=site,
        formSlug=form_slug,
        pricingTier=pricing_tier,
        formSubmissionId=form_submission_id,
        paymentIntentId=pi.id,
        amountCents=amount_cents,
        currency=currency,
        receiptEmail=pi.receipt_email,
        metadata=metadata or None,
    ))
    return payment.id


# Event types with business side effects; everything else is acknowledged without writes
EVENT_HANDLERS: Dict[str, EventHandler] = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
}


# ============================================================================
# PROCESSOR
# ============================================================================

def process_stripe_event(
    db: Session,
    event: Any,
    config: ProcessorConfig,
    notifier: Optional[CrmNotifier] = None,
) -> EventResult:
    """Process one verified Stripe event exactly once.

    Args:
        db: Database session
        event: Verified Stripe event (StripeObject or dict with id/type/livemode/created/data)
        config: Injected processor configuration
        notifier: CRM notifier; built from config when omitted

    Returns:
        EventResult; deduped is True for redeliveries

    Raises:
        AlreadyProcessingError: another worker holds the claim, retry later
        ValidationError, IdentifierConflictError, StoreIOError: processing failed;
            the journal row is marked failed before re-raising
    """
    parsed = parse_event(event)
    notifier = notifier or CrmNotifier(config)

    claim = claim_stripe_event(
        db,
        parsed.id,
        parsed.type,
        livemode=parsed.livemode,
        created=parsed.created,
        claim_ttl_seconds=config.claim_ttl_seconds,
    )

    if claim.outcome == ClaimOutcome.ALREADY_SUCCEEDED:
        logger.info(f"Webhook event {parsed.id} already processed")
        stripe_events_counter.labels(outcome="duplicate").inc()
        return EventResult(handled=False, deduped=True)

    if claim.outcome == ClaimOutcome.ALREADY_PROCESSING:
        logger.warning(f"Webhook event {parsed.id} is being processed by another worker")
        stripe_events_counter.labels(outcome="busy").inc()
        raise AlreadyProcessingError(parsed.id)

    logger.info(
        f"Claimed webhook event {parsed.id} type={parsed.type} "
        f"livemode={parsed.livemode} first_seen={claim.first_seen}"
    )

    try:
        handler = EVENT_HANDLERS.get(parsed.type)
        resource_id = handler(db, parsed, config, notifier) if handler else None
        mark_stripe_event_status(db, parsed.id, STRIPE_EVENT_SUCCEEDED, claim_token=claim.token)
    except Exception as e:
        message = _error_message(e)
        logger.error(f"Error processing webhook {parsed.id} of type {parsed.type}: {message}", exc_info=True)
        stripe_events_counter.labels(outcome="failed").inc()
        db.rollback()
        # Best effort: never let this replace the original error
        try:
            mark_stripe_event_status(db, parsed.id, STRIPE_EVENT_FAILED, last_error=message, claim_token=claim.token)
        except Exception as mark_error:
            logger.error(f"Could not mark webhook event {parsed.id} failed: {mark_error}")
        raise

    stripe_events_counter.labels(outcome="handled" if handler else "ignored").inc()
    logger.info(f"Successfully processed webhook event {parsed.id} of type {parsed.type}")
    return EventResult(
        handled=handler is not None,
        deduped=not claim.first_seen,
        resource_id=resource_id,
    )
