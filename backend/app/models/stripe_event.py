"""StripeEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, BigInteger, CheckConstraint
from datetime import datetime, timezone
from app.models.base import Base


STRIPE_EVENT_PROCESSING = "processing"
STRIPE_EVENT_SUCCEEDED = "succeeded"
STRIPE_EVENT_FAILED = "failed"

STRIPE_EVENT_STATUSES = (STRIPE_EVENT_PROCESSING, STRIPE_EVENT_SUCCEEDED, STRIPE_EVENT_FAILED)


class StripeEvent(Base):
    """Stripe webhook event journal.

    One row per Stripe event id. Gates processing of the event itself; the
    business rows it produces live in payments / form_submissions.
    """
    __tablename__ = "stripe_events"

    event_id = Column(String(255), primary_key=True)
    type = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=STRIPE_EVENT_PROCESSING)
    livemode = Column(Boolean, default=False, nullable=False)
    created = Column(BigInteger, nullable=True)  # Stripe epoch seconds
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    attempts = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'succeeded', 'failed')",
            name="ck_stripe_events_status"
        ),
    )

    def __repr__(self):
        return f"<StripeEvent {self.event_id} {self.type} {self.status}>"
