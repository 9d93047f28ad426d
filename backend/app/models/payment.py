"""Payment model"""
import uuid
from sqlalchemy import Column, Integer, String, JSON, Index, DateTime, CheckConstraint, text
from datetime import datetime, timezone
from app.models.base import Base


PAYMENT_STATUSES = ("succeeded", "failed", "refunded", "processing", "requires_action")


class Payment(Base):
    """Payment ledger.

    One row per distinct Stripe PaymentIntent and per distinct Checkout Session;
    a row may be reachable by either id.
    """
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    site = Column(String(32), nullable=False, index=True)
    # Plain reference: metadata may point at a submission we never stored
    form_submission_id = Column(String(64), nullable=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    stripe_payment_intent_id = Column(String(128), nullable=True)
    stripe_checkout_session_id = Column(String(128), nullable=True)
    stripe_customer_id = Column(String(128), nullable=True)
    status = Column(String(32), nullable=False)
    raw_event = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        CheckConstraint("length(currency) = 3 AND currency = lower(currency)", name="ck_payments_currency_lower"),
        CheckConstraint(
            "stripe_payment_intent_id IS NOT NULL OR stripe_checkout_session_id IS NOT NULL",
            name="ck_payments_has_stripe_id"
        ),
        CheckConstraint(
            "status IN ('succeeded', 'failed', 'refunded', 'processing', 'requires_action')",
            name="ck_payments_status"
        ),
        Index(
            "uq_payments_stripe_payment_intent_id",
            "stripe_payment_intent_id",
            unique=True,
            postgresql_where=text("stripe_payment_intent_id IS NOT NULL"),
            sqlite_where=text("stripe_payment_intent_id IS NOT NULL"),
        ),
        Index(
            "uq_payments_stripe_checkout_session_id",
            "stripe_checkout_session_id",
            unique=True,
            postgresql_where=text("stripe_checkout_session_id IS NOT NULL"),
            sqlite_where=text("stripe_checkout_session_id IS NOT NULL"),
        ),
    )

    def __repr__(self):
        return f"<Payment {self.id} {self.amount_cents} {self.currency} {self.status}>"
