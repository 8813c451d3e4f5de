"""Restaurant plan subscriptions billed through Stripe Billing.

A local ``RestaurantSubscription`` row mirrors one Stripe subscription. It is
created INCOMPLETE and only the subscription webhook moves it to ACTIVE, once
Stripe reports the first invoice as paid.
"""
import calendar
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import UUID

from tortoise.exceptions import IntegrityError
from tortoise.timezone import now

from app.config import settings
from app.errors import ExternalServiceError, InvalidStateError, NotFoundError
from app.utils import stripe_client
from applications.restaurant.models import Restaurant
from applications.subscription.models import (
    PlanInterval,
    RestaurantSubscription,
    SubscriptionPlan,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

OPEN_SUBSCRIPTION_STATES = (SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE)
STRIPE_INTERVALS = {PlanInterval.MONTHLY: "month", PlanInterval.YEARLY: "year"}


def add_interval(start: datetime, interval: PlanInterval) -> datetime:
    """One billing period after ``start``; the day is clamped to the target month."""
    months = 12 if interval == PlanInterval.YEARLY else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


# =========================
# PLANS
# =========================
async def create_plan(
    name: str,
    price: Decimal,
    interval: PlanInterval,
    features: Optional[dict] = None,
) -> SubscriptionPlan:
    unit_amount = int((price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    stripe_price = await stripe_client.create_plan_price(
        name=name,
        unit_amount=unit_amount,
        currency=settings.STRIPE_CURRENCY,
        interval=STRIPE_INTERVALS[interval],
        metadata={"plan_name": name},
    )
    plan = await SubscriptionPlan.create(
        name=name,
        price=price,
        interval=interval,
        features=features,
        stripe_price_id=stripe_price.id,
    )
    logger.info(f"Subscription plan {plan.id} created with price {stripe_price.id}")
    return plan


async def list_plans() -> list[SubscriptionPlan]:
    return await SubscriptionPlan.filter(is_active=True).order_by("price")


async def get_plan(plan_id: UUID) -> SubscriptionPlan:
    plan = await SubscriptionPlan.get_or_none(id=plan_id)
    if not plan:
        raise NotFoundError("Subscription plan not found")
    return plan


async def update_plan(plan_id: UUID, name: Optional[str] = None, features: Optional[dict] = None) -> SubscriptionPlan:
    # Stripe prices are immutable, so price and interval never change here.
    plan = await get_plan(plan_id)

    if name and name.strip():
        plan.name = name
    if features is not None:
        plan.features = features
    await plan.save()
    return plan


async def deactivate_plan(plan_id: UUID) -> SubscriptionPlan:
    plan = await get_plan(plan_id)
    plan.is_active = False
    await plan.save()
    logger.info(f"Subscription plan {plan.id} deactivated")
    return plan


async def _offered_plan(plan_id: UUID) -> SubscriptionPlan:
    plan = await get_plan(plan_id)
    if not plan.is_active:
        raise InvalidStateError("Subscription plan is no longer offered")
    if not plan.stripe_price_id:
        raise InvalidStateError("Subscription plan has no Stripe price")
    return plan


# =========================
# SUBSCRIPTIONS
# =========================
async def _get_restaurant(restaurant_id: UUID) -> Restaurant:
    restaurant = await Restaurant.get_or_none(id=restaurant_id)
    if not restaurant:
        raise NotFoundError("Restaurant not found")
    return restaurant


async def _get_subscription(subscription_id: UUID, restaurant_id: Optional[UUID]) -> RestaurantSubscription:
    """``restaurant_id`` of None means an admin acting on any restaurant."""
    subscription = await RestaurantSubscription.get_or_none(id=subscription_id)
    if not subscription or (restaurant_id and subscription.restaurant_id != restaurant_id):
        raise NotFoundError("Subscription not found")
    return subscription


async def ensure_restaurant_customer(restaurant: Restaurant) -> str:
    """Billing customer for ``restaurant``, created on first call only."""
    if restaurant.stripe_customer_id:
        return restaurant.stripe_customer_id

    owner = await restaurant.owner
    customer = await stripe_client.create_customer(
        email=owner.email,
        name=restaurant.name,
        metadata={
            "restaurant_id": str(restaurant.id),
            "connect_account_id": restaurant.stripe_connect_account_id or "",
        },
        idempotency_key=f"restaurant_customer_{restaurant.id}",
    )
    updated = await Restaurant.filter(id=restaurant.id, stripe_customer_id__isnull=True).update(
        stripe_customer_id=customer.id
    )
    if not updated:
        await restaurant.refresh_from_db(fields=["stripe_customer_id"])
        return restaurant.stripe_customer_id

    restaurant.stripe_customer_id = customer.id
    logger.info(f"Stripe customer {customer.id} created for restaurant {restaurant.id}")
    return customer.id


def _client_secret(stripe_subscription) -> Optional[str]:
    invoice = getattr(stripe_subscription, "latest_invoice", None)
    confirmation = getattr(invoice, "confirmation_secret", None)
    return getattr(confirmation, "client_secret", None)


async def create_subscription(restaurant_id: UUID, plan_id: UUID) -> tuple[RestaurantSubscription, Optional[str]]:
    """Start a subscription; returns the row and the client secret of its first invoice."""
    restaurant = await _get_restaurant(restaurant_id)
    if not restaurant.stripe_connect_account_id:
        raise InvalidStateError("Restaurant has no Stripe account. Complete onboarding first.")

    plan = await _offered_plan(plan_id)
    if await RestaurantSubscription.filter(
        restaurant_id=restaurant.id, status__in=OPEN_SUBSCRIPTION_STATES
    ).exists():
        raise InvalidStateError("Restaurant already has an open subscription. Change its plan instead.")

    account = await stripe_client.retrieve_account(restaurant.stripe_connect_account_id)
    if not getattr(account, "charges_enabled", False):
        raise InvalidStateError("Stripe account cannot accept charges yet. Complete onboarding first.")

    customer_id = await ensure_restaurant_customer(restaurant)

    # Concurrent requests share the key and get back the same Stripe subscription.
    attempt = await RestaurantSubscription.filter(restaurant_id=restaurant.id).count()
    stripe_subscription = await stripe_client.create_subscription(
        customer=customer_id,
        price=plan.stripe_price_id,
        metadata={"restaurant_id": str(restaurant.id), "plan_id": str(plan.id)},
        idempotency_key=f"subscription_{restaurant.id}_{plan.id}_{attempt}",
    )

    start = now()
    try:
        subscription = await RestaurantSubscription.create(
            restaurant_id=restaurant.id,
            plan_id=plan.id,
            stripe_subscription_id=stripe_subscription.id,
            status=SubscriptionStatus.INCOMPLETE,
            start_date=start,
            end_date=add_interval(start, plan.interval),
        )
    except IntegrityError:
        subscription = await RestaurantSubscription.get(stripe_subscription_id=stripe_subscription.id)

    logger.info(
        f"Subscription {stripe_subscription.id} created for restaurant {restaurant.id} "
        f"on plan {plan.id} (waiting for first payment)"
    )
    return subscription, _client_secret(stripe_subscription)


async def attach_subscription_payment_method(restaurant_id: UUID, payment_method_id: str) -> Optional[RestaurantSubscription]:
    """Save a card as the restaurant's billing default and retry its open invoice with it."""
    restaurant = await _get_restaurant(restaurant_id)
    if not restaurant.stripe_customer_id:
        raise InvalidStateError("Restaurant has no billing customer. Subscribe to a plan first.")

    await stripe_client.attach_payment_method(payment_method_id, restaurant.stripe_customer_id)
    await stripe_client.set_default_customer_payment_method(restaurant.stripe_customer_id, payment_method_id)

    subscription = await RestaurantSubscription.filter(
        restaurant_id=restaurant.id, status__in=OPEN_SUBSCRIPTION_STATES
    ).order_by("-created_at").first()
    if not subscription or not subscription.stripe_subscription_id:
        return subscription

    stripe_subscription = await stripe_client.modify_subscription(
        subscription.stripe_subscription_id,
        default_payment_method=payment_method_id,
        expand=["latest_invoice"],
    )
    invoice = getattr(stripe_subscription, "latest_invoice", None)
    if getattr(invoice, "status", None) == "open":
        try:
            await stripe_client.pay_invoice(invoice.id, payment_method_id)
        except ExternalServiceError as e:
            # The invoice stays open; the subscription webhook reports the outcome.
            logger.warning(f"Could not pay invoice {invoice.id} for subscription {subscription.id}: {e}")

    logger.info(f"Payment method {payment_method_id} set as default for subscription {subscription.id}")
    return subscription


async def update_subscription(
    subscription_id: UUID,
    new_plan_id: UUID,
    restaurant_id: Optional[UUID] = None,
) -> RestaurantSubscription:
    subscription = await _get_subscription(subscription_id, restaurant_id)
    if subscription.status not in OPEN_SUBSCRIPTION_STATES:
        raise InvalidStateError(f"Cannot change plan of a {subscription.status.value} subscription")

    plan = await _offered_plan(new_plan_id)
    if plan.id == subscription.plan_id:
        return subscription

    stripe_subscription = await stripe_client.retrieve_subscription(subscription.stripe_subscription_id)
    # StripeObject is a dict, so "items" must be read as a key.
    items = (stripe_client.to_plain(stripe_subscription).get("items") or {}).get("data") or []
    if not items:
        raise InvalidStateError("Stripe subscription has no items to update")

    await stripe_client.modify_subscription(
        subscription.stripe_subscription_id,
        items=[{"id": items[0]["id"], "price": plan.stripe_price_id}],
    )
    subscription.plan_id = plan.id
    await subscription.save()
    logger.info(f"Subscription {subscription.id} moved to plan {plan.id}")
    return subscription


async def cancel_subscription(subscription_id: UUID, restaurant_id: Optional[UUID] = None) -> RestaurantSubscription:
    subscription = await _get_subscription(subscription_id, restaurant_id)
    if subscription.status == SubscriptionStatus.CANCELLED:
        return subscription

    if subscription.stripe_subscription_id:
        await stripe_client.cancel_subscription(subscription.stripe_subscription_id)

    subscription.status = SubscriptionStatus.CANCELLED
    subscription.end_date = now()
    await subscription.save()
    logger.info(f"Subscription {subscription.id} cancelled")
    return subscription


async def list_subscriptions(restaurant_id: UUID) -> list[RestaurantSubscription]:
    await _get_restaurant(restaurant_id)
    return await RestaurantSubscription.filter(restaurant_id=restaurant_id).order_by("-created_at").prefetch_related("plan")
