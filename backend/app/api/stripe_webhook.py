"""Stripe webhook route"""

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.api.dependencies import get_notifier, get_processor_config
from app.core.config import ProcessorConfig, settings
from app.core.logging import webhook_logger
from app.db.session import get_db
from app.services.notifier import CrmNotifier
from app.services.stripe_client import construct_webhook_event
from app.services.stripe_service import process_stripe_event

router = APIRouter(prefix="/stripe", tags=["stripe"])
logger = webhook_logger


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    config: ProcessorConfig = Depends(get_processor_config),
    notifier: CrmNotifier = Depends(get_notifier),
):
    """Handle Stripe webhook events

    Returns 200 for processed and already-processed events. Processing
    failures propagate as ProcessingError and become 5xx so Stripe redelivers.
    """
    # Read body as raw bytes (critical for signature verification)
    payload = await request.body()
    if not payload:
        raise HTTPException(400, "Missing request body")
    if len(payload) > settings.MAX_WEBHOOK_BODY_BYTES:
        logger.warning(f"Webhook body too large: {len(payload)} bytes")
        raise HTTPException(413, "Payload too large")

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        event = construct_webhook_event(payload, sig_header)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, "Invalid payload")
    except stripe.SignatureVerificationError as e:
        # Do not echo verification details back to the caller
        logger.warning(f"Invalid webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")

    logger.info(f"Webhook received: {event['id']} type={event['type']}")

    result = await run_in_threadpool(process_stripe_event, db, event, config, notifier)

    logger.info(
        f"Webhook handled: {event['id']} handled={result.handled} deduped={result.deduped}"
    )
    return result.to_response()
