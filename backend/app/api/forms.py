"""Form submission routes"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.dependencies import enforce_json_body_limit
from app.core.config import settings
from app.core.errors import BadRequestError, ValidationError
from app.db.session import get_db
from app.schemas.forms import SubmitFormRequest, SubmitPaidFormRequest
from app.services.form_service import submit_form, submit_paid_form

router = APIRouter(prefix="/forms", tags=["forms"], dependencies=[Depends(enforce_json_body_limit)])
logger = logging.getLogger(__name__)


@router.post("/submit")
def submit_form_route(body: SubmitFormRequest, db: Session = Depends(get_db)):
    """Store an unpaid form submission (idempotent on submissionKey)"""
    try:
        result = submit_form(db, body, settings.ALLOWED_SITES)
    except ValidationError as e:
        raise BadRequestError(e.message, details=e.details) from e

    return {"ok": True, "submissionId": result.submission_id, "deduped": result.deduped}


@router.post("/submit-paid")
def submit_paid_form_route(body: SubmitPaidFormRequest, db: Session = Depends(get_db)):
    """Store a paid form submission and create its Stripe PaymentIntent"""
    try:
        result = submit_paid_form(db, body, settings.ALLOWED_SITES, settings.SUPPORTED_CURRENCIES)
    except ValidationError as e:
        raise BadRequestError(e.message, details=e.details) from e
    except stripe.StripeError as e:
        logger.error(f"Stripe PaymentIntent creation failed for {body.site}/{body.formSlug}: {e}")
        raise HTTPException(502, "Payment provider unavailable")

    return {
        "ok": True,
        "submissionId": result.submission_id,
        "clientSecret": result.client_secret,
        "amountCents": result.amount_cents,
        "currency": result.currency,
        "description": result.description,
        "deduped": result.deduped,
    }
