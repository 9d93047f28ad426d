"""Pydantic schemas for form submission endpoints"""
from typing import Annotated, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator, model_validator


Site = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=32, pattern=r"^[A-Za-z0-9.-]+$")]
FormSlug = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=64, pattern=r"^[A-Za-z0-9/_-]+$")]
Phone = Annotated[str, StringConstraints(strip_whitespace=True, min_length=6, max_length=32, pattern=r"^[0-9+() -]+$")]
# Permissive on purpose: only length and trimming
SubmissionKey = Annotated[str, StringConstraints(strip_whitespace=True, min_length=8, max_length=128)]
Name = Annotated[str, StringConstraints(strip_whitespace=True, max_length=120)]
SourceUrl = Annotated[str, StringConstraints(strip_whitespace=True, max_length=2048)]


def _payload_string(payload: Optional[Dict[str, Any]], key: str) -> Optional[str]:
    if not payload:
        return None
    value = payload.get(key)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


class _ContactFields(BaseModel):
    site: Site
    formSlug: FormSlug
    email: Optional[EmailStr] = None
    name: Optional[Name] = None
    phone: Optional[Phone] = None
    sourceUrl: Optional[SourceUrl] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("site")
    @classmethod
    def lowercase_site(cls, v):
        return v.lower()

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v):
        if v is None:
            return v
        if len(v) > 254:
            raise ValueError("email too long")
        return v.lower()

    @field_validator("sourceUrl")
    @classmethod
    def http_scheme_only(cls, v):
        if v is not None and not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("Invalid URL scheme")
        return v


class SubmitFormRequest(_ContactFields):
    """Request body for POST /forms/submit"""
    model_config = ConfigDict(extra="forbid")

    submissionKey: Optional[SubmissionKey] = None
    # Anti-spam honeypot, must be empty when present
    hp: Optional[str] = None

    @model_validator(mode="after")
    def check_submission(self):
        if self.hp and self.hp.strip():
            raise ValueError("Rejected")

        if not self.email and not self.phone:
            raise ValueError("Provide at least one contact method (email or phone)")

        # Older clients put submissionKey inside payload; both present must agree
        payload_key = _payload_string(self.payload, "submissionKey")
        if self.submissionKey and payload_key and self.submissionKey != payload_key:
            raise ValueError("submissionKey mismatch")
        return self

    def resolved_submission_key(self) -> Optional[str]:
        """Top-level submissionKey, falling back to payload.submissionKey"""
        return self.submissionKey or _payload_string(self.payload, "submissionKey")


class PaidFormPayment(BaseModel):
    """Final price handed over by the caller (catalog lookup happens upstream)"""
    amountCents: int = Field(gt=0, strict=True)
    currency: Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, pattern=r"^[a-zA-Z]{3}$")]
    description: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=500)]] = None


class SubmitPaidFormRequest(_ContactFields):
    """Request body for POST /forms/submit-paid"""
    payment: PaidFormPayment
    idempotencyKey: Optional[SubmissionKey] = None
