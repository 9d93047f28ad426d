"""Thin wrappers around the Stripe API used by the webhook and paid-form flows"""
import logging
from typing import Any, Dict, Optional

import stripe

from app.core.config import settings

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY


def construct_webhook_event(payload: bytes, sig_header: str) -> Any:
    """Verify the Stripe-Signature header against the raw body and parse the event.

    Raises:
        ValueError: webhook secret missing or body is not valid JSON
        stripe.SignatureVerificationError: signature mismatch or outside tolerance
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise ValueError("Webhook secret not configured")

    return stripe.Webhook.construct_event(
        payload,
        sig_header,
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )


def create_payment_intent(
    amount_cents: int,
    currency: str,
    description: Optional[str],
    metadata: Dict[str, str],
    idempotency_key: str,
) -> Any:
    """Create a PaymentIntent; Stripe replays the original for a repeated idempotency key"""
    return stripe.PaymentIntent.create(
        amount=amount_cents,
        currency=currency,
        description=description,
        metadata=metadata,
        automatic_payment_methods={"enabled": True},
        idempotency_key=idempotency_key,
    )
