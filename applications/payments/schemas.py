from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from applications.restaurant.models import StripeAccountStatus


class RefundType(str, Enum):
    GATEWAY = "gateway"
    CASH = "cash"


class RefundRecord(BaseModel):
    id: str
    amount: int  # minor units
    status: str
    order_id: UUID
    type: RefundType
    note: Optional[str] = None


class CreatePaymentIntentRequest(BaseModel):
    order_id: UUID


class RefundRequest(BaseModel):
    order_id: UUID
    amount: Optional[int] = Field(default=None, gt=0, description="Refund amount in cents; omit for a full refund")


class AccountStatusResponse(BaseModel):
    status: StripeAccountStatus
    charges_enabled: bool
    payouts_enabled: bool


class AttachPaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1, description="pm_xxx from Stripe")
