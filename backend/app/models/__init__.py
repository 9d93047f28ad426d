"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.stripe_event import StripeEvent
from app.models.payment import Payment
from app.models.form_submission import FormSubmission

# Export all for convenience
__all__ = ["Base", "StripeEvent", "Payment", "FormSubmission"]
