from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from app.auth import login_required, role_required
from app.errors import NotFoundError
from applications.payments.services import subscriptions
from applications.restaurant.models import Restaurant
from applications.subscription.models import RestaurantSubscription, SubscriptionPlan
from applications.subscription.schemas import (
    CancelSubscriptionRequest,
    CreatePlanRequest,
    SubscribeRequest,
    SubscriptionPaymentMethodRequest,
    UpdatePlanRequest,
    UpdateSubscriptionRequest,
)
from applications.user.models import User, UserRole
from routes.payments.connect import resolve_restaurant_id

router = APIRouter(tags=["Subscriptions"])


def serialize_plan(plan: SubscriptionPlan) -> dict:
    return {
        "id": str(plan.id),
        "name": plan.name,
        "price": str(plan.price),
        "interval": plan.interval.value,
        "features": plan.features,
        "is_active": plan.is_active,
    }


def serialize_subscription(subscription: RestaurantSubscription, plan: Optional[SubscriptionPlan] = None) -> dict:
    data = {
        "id": str(subscription.id),
        "restaurant_id": str(subscription.restaurant_id),
        "plan_id": str(subscription.plan_id),
        "status": subscription.status.value,
        "start_date": subscription.start_date.isoformat(),
        "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
    }
    if plan is not None:
        data["plan"] = serialize_plan(plan)
    return data


async def owned_restaurant_id(user: User) -> Optional[UUID]:
    """None for admins, who may act on any restaurant's subscription."""
    if user.role == UserRole.ADMIN:
        return None
    restaurant = await Restaurant.get_or_none(owner_id=user.id)
    if not restaurant:
        raise NotFoundError("No restaurant registered for this account")
    return restaurant.id


# =========================
# PLANS
# =========================
@router.get("/plans")
async def list_plans(user: User = Depends(login_required)):
    return [serialize_plan(p) for p in await subscriptions.list_plans()]


@router.get("/plans/{plan_id}")
async def get_plan(plan_id: UUID, user: User = Depends(login_required)):
    return serialize_plan(await subscriptions.get_plan(plan_id))


@router.post("/plans", status_code=201)
async def create_plan(body: CreatePlanRequest, user: User = Depends(role_required(UserRole.ADMIN))):
    plan = await subscriptions.create_plan(body.name, body.price, body.interval, body.features)
    return serialize_plan(plan)


@router.put("/plans/{plan_id}")
async def update_plan(plan_id: UUID, body: UpdatePlanRequest, user: User = Depends(role_required(UserRole.ADMIN))):
    plan = await subscriptions.update_plan(plan_id, name=body.name, features=body.features)
    return serialize_plan(plan)


@router.delete("/plans/{plan_id}")
async def deactivate_plan(plan_id: UUID, user: User = Depends(role_required(UserRole.ADMIN))):
    plan = await subscriptions.deactivate_plan(plan_id)
    return {"message": "Subscription plan deactivated", "id": str(plan.id)}


# =========================
# SUBSCRIPTIONS
# =========================
@router.post("/subscribe", status_code=201)
async def subscribe(body: SubscribeRequest, user: User = Depends(role_required(UserRole.RESTAURANT))):
    target = await resolve_restaurant_id(user, body.restaurant_id)
    subscription, client_secret = await subscriptions.create_subscription(target, body.plan_id)
    return {"subscription": serialize_subscription(subscription), "client_secret": client_secret}


@router.post("/attach-payment-method")
async def attach_payment_method(
    body: SubscriptionPaymentMethodRequest,
    user: User = Depends(role_required(UserRole.RESTAURANT)),
):
    target = await resolve_restaurant_id(user, body.restaurant_id)
    subscription = await subscriptions.attach_subscription_payment_method(target, body.payment_method_id)
    return {
        "message": "Payment method attached",
        "subscription": serialize_subscription(subscription) if subscription else None,
    }


@router.put("/update")
async def update_subscription(
    body: UpdateSubscriptionRequest,
    user: User = Depends(role_required(UserRole.RESTAURANT)),
):
    scope = await owned_restaurant_id(user)
    subscription = await subscriptions.update_subscription(body.subscription_id, body.new_plan_id, scope)
    return serialize_subscription(subscription)


@router.post("/cancel")
async def cancel_subscription(
    body: CancelSubscriptionRequest,
    user: User = Depends(role_required(UserRole.RESTAURANT)),
):
    scope = await owned_restaurant_id(user)
    subscription = await subscriptions.cancel_subscription(body.subscription_id, scope)
    return serialize_subscription(subscription)


@router.get("/list")
async def list_subscriptions(
    restaurant_id: Optional[UUID] = None,
    user: User = Depends(role_required(UserRole.RESTAURANT)),
):
    target = await resolve_restaurant_id(user, restaurant_id)
    return [serialize_subscription(s, plan=s.plan) for s in await subscriptions.list_subscriptions(target)]
