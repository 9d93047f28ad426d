"""FormSubmission model"""
import uuid
from sqlalchemy import Column, String, Text, JSON, Index, DateTime, CheckConstraint, text
from datetime import datetime, timezone
from app.models.base import Base


SUBMISSION_STATUSES = ("new", "pending_payment", "converted", "spam", "error")


class FormSubmission(Base):
    """Form submissions from tenant sites"""
    __tablename__ = "form_submissions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    site = Column(String(32), nullable=False, index=True)
    form_slug = Column(String(64), nullable=False)
    submission_key = Column(String(128), nullable=True)  # Client idempotency key
    status = Column(String(32), nullable=False, default="new")
    email = Column(String(254), nullable=True)
    name = Column(String(120), nullable=True)
    phone = Column(String(32), nullable=True)
    source_url = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('new', 'pending_payment', 'converted', 'spam', 'error')",
            name="ck_form_submissions_status"
        ),
        # Submissions without a key are never deduplicated
        Index(
            "uq_form_submissions_submission_key",
            "site", "form_slug", "submission_key",
            unique=True,
            postgresql_where=text("submission_key IS NOT NULL"),
            sqlite_where=text("submission_key IS NOT NULL"),
        ),
    )

    def __repr__(self):
        return f"<FormSubmission {self.id} {self.site}/{self.form_slug} {self.status}>"
