from datetime import datetime
from typing import Literal, Optional

from pydantic import field_validator

from ..core.business import as_utc
from .common import CamelModel


class PaymentCreateRequest(CamelModel):
    appointment_id: str


class PaymentCreateResponse(CamelModel):
    success: bool = True
    payment_url: str
    session_id: str
    gateway_reference: Optional[str] = None
    amount: float
    currency: str


class PaymentStatusView(CamelModel):
    """Authoritative payment state for one appointment."""
    status: Literal["pending", "paid", "failed"]
    required: bool
    message: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_reference: Optional[str] = None
    session_id: Optional[str] = None

    @field_validator("paid_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None
