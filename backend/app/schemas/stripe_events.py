"""Pydantic schemas for verified Stripe events handed to the event processor"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class VerifiedEvent(BaseModel):
    """Envelope of a Stripe event whose signature has already been checked"""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=100)
    livemode: bool = False
    created: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> Any:
        return self.data.get("object")


class PaymentIntentPayload(BaseModel):
    """The parts of a PaymentIntent the ledger relies on.

    Amount fields stay loosely typed here; the processor decides which one
    counts and rejects anything that is not integer minor units.
    """
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=128)
    currency: str = Field(min_length=1)
    amount: Any = None
    amount_received: Any = None
    customer: Any = None
    receipt_email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class EventResult:
    """What the webhook boundary needs to answer Stripe"""
    handled: bool
    deduped: bool = False
    resource_id: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body = {"ok": True, "handled": self.handled, "deduped": self.deduped}
        if self.resource_id:
            body["paymentId"] = self.resource_id
        return body
