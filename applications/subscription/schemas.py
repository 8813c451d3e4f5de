from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from applications.subscription.models import PlanInterval


class CreatePlanRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    price: Decimal = Field(..., ge=0, decimal_places=2, description="Price per interval in major units")
    interval: PlanInterval
    features: Optional[dict] = None


class UpdatePlanRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    features: Optional[dict] = None


class SubscribeRequest(BaseModel):
    plan_id: UUID
    restaurant_id: Optional[UUID] = None


class UpdateSubscriptionRequest(BaseModel):
    subscription_id: UUID
    new_plan_id: UUID


class CancelSubscriptionRequest(BaseModel):
    subscription_id: UUID


class SubscriptionPaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1, description="pm_xxx from Stripe")
    restaurant_id: Optional[UUID] = None
