"""Form submission writes and the submit / submit-paid flows"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import BadRequestError, StoreIOError, ValidationError
from app.core.metrics import form_submissions_counter
from app.db.idempotency import insert_or_fetch
from app.models.form_submission import FormSubmission, SUBMISSION_STATUSES
from app.schemas.forms import SubmitFormRequest, SubmitPaidFormRequest
from app.services.payment_service import clean_string
from app.services.stripe_client import create_payment_intent
from app.utils.stripe_objects import get_stripe_value

logger = logging.getLogger(__name__)


@dataclass
class SubmissionInput:
    site: str
    form_slug: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    source_url: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    # Optional idempotency key for the submission itself
    submission_key: Optional[str] = None
    status: str = "new"


@dataclass
class SubmitFormResult:
    submission_id: str
    deduped: bool


@dataclass
class SubmitPaidFormResult:
    submission_id: str
    client_secret: str
    amount_cents: int
    currency: str
    description: Optional[str] = None
    deduped: bool = False


def _clean_payload(payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    return dict(payload)


def get_submission_by_key(db: Session, site: str, form_slug: str, submission_key: str) -> Optional[FormSubmission]:
    return db.query(FormSubmission).filter(
        FormSubmission.site == site,
        FormSubmission.form_slug == form_slug,
        FormSubmission.submission_key == submission_key
    ).first()


def create_form_submission(db: Session, submission: SubmissionInput) -> Tuple[FormSubmission, bool]:
    """Insert one form submission, deduplicating on its submission key.

    Submissions are create-once: a retry with the same (site, form_slug,
    submission_key) gets the stored row back untouched. Without a key every
    call inserts.

    Returns:
        (submission, deduped)

    Raises:
        ValidationError: missing site/form_slug or unknown status
        StoreIOError: database failure
    """
    site = clean_string(submission.site, 32)
    form_slug = clean_string(submission.form_slug, 64)
    if not site:
        raise ValidationError("site is required")
    if not form_slug:
        raise ValidationError("form_slug is required")
    if submission.status not in SUBMISSION_STATUSES:
        raise ValidationError(f"Unknown submission status: {submission.status!r}")

    site = site.lower()
    submission_key = clean_string(submission.submission_key, 128)

    row = FormSubmission(
        site=site,
        form_slug=form_slug,
        email=clean_string(submission.email, 254),
        name=clean_string(submission.name, 120),
        phone=clean_string(submission.phone, 32),
        source_url=clean_string(submission.source_url, 2048),
        payload=_clean_payload(submission.payload),
        submission_key=submission_key,
        status=submission.status,
    )

    fetch = (lambda: get_submission_by_key(db, site, form_slug, submission_key)) if submission_key else (lambda: None)
    stored, inserted = insert_or_fetch(db, row, fetch, what="form_submissions insert")

    if inserted:
        form_submissions_counter.labels(result="created").inc()
        logger.info(f"Created form submission {stored.id} for {site}/{form_slug}")
        return stored, False

    if stored is None:
        raise StoreIOError("form_submissions conflict reported but no matching row found")

    form_submissions_counter.labels(result="deduped").inc()
    logger.info(f"Form submission {stored.id} already exists for key on {site}/{form_slug}")
    return stored, True


def mark_submission_converted(db: Session, submission_id: str) -> int:
    """Transition a submission to converted after its payment succeeded.

    Returns the number of rows updated. Zero is not an error: payments made
    outside the forms flow carry no (or a stale) submission reference.
    """
    stmt = (
        update(FormSubmission)
        .where(FormSubmission.id == submission_id)
        .values(status="converted", updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreIOError(f"form_submissions update failed: {e.__class__.__name__}") from e

    if result.rowcount == 0:
        logger.warning(f"Payment referenced unknown form submission {submission_id}")
    return result.rowcount


def submit_form(db: Session, body: SubmitFormRequest, allowed_sites: Iterable[str]) -> SubmitFormResult:
    """Core logic for POST /forms/submit (unpaid forms)"""
    # Hard allowlist for site (data quality + anti-spam)
    if body.site not in set(allowed_sites):
        raise BadRequestError("Invalid site")

    submission, deduped = create_form_submission(db, SubmissionInput(
        site=body.site,
        form_slug=body.formSlug,
        email=body.email,
        name=body.name,
        phone=body.phone,
        source_url=body.sourceUrl,
        payload=body.payload,
        submission_key=body.resolved_submission_key(),
    ))
    return SubmitFormResult(submission_id=submission.id, deduped=deduped)


def submit_paid_form(
    db: Session,
    body: SubmitPaidFormRequest,
    allowed_sites: Iterable[str],
    currencies: Iterable[str],
) -> SubmitPaidFormResult:
    """Core logic for POST /forms/submit-paid (paid forms using Stripe Elements).

    1) Create (or reuse) a pending_payment submission.
    2) Create a PaymentIntent whose metadata links back to it. The Stripe
       idempotency key is derived from the submission id so a retried request
       gets the same PaymentIntent back.
    """
    if body.site not in set(allowed_sites):
        raise BadRequestError("Invalid site")
    if body.payment.currency not in set(currencies):
        raise BadRequestError(f"Unsupported currency: {body.payment.currency}")

    submission, deduped = create_form_submission(db, SubmissionInput(
        site=body.site,
        form_slug=body.formSlug,
        email=body.email,
        name=body.name,
        phone=body.phone,
        source_url=body.sourceUrl,
        payload=body.payload,
        submission_key=body.idempotencyKey,
        status="pending_payment",
    ))

    payment_intent = create_payment_intent(
        amount_cents=body.payment.amountCents,
        currency=body.payment.currency,
        description=body.payment.description,
        metadata={
            "form_submission_id": submission.id,
            "site": submission.site,
            "form_slug": submission.form_slug,
        },
        idempotency_key=f"submission:{submission.id}",
    )

    client_secret = get_stripe_value(payment_intent, "client_secret")
    if not client_secret:
        raise StoreIOError("Stripe did not return a client_secret")

    logger.info(f"Created PaymentIntent for submission {submission.id} (deduped={deduped})")
    return SubmitPaidFormResult(
        submission_id=submission.id,
        client_secret=client_secret,
        amount_cents=body.payment.amountCents,
        currency=body.payment.currency,
        description=body.payment.description,
        deduped=deduped,
    )
