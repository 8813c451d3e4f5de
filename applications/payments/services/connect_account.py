"""Stripe Connect payout accounts for restaurants.

Account creation is the only place that ever assigns
``Restaurant.stripe_connect_account_id``; the onboarding link and status
lookups are read-only with respect to the account id.
"""
import logging
from typing import Optional

from app.config import settings
from app.errors import InternalError, InvalidStateError, NotFoundError
from app.utils import stripe_client
from applications.restaurant.models import Restaurant, StripeAccountStatus

logger = logging.getLogger(__name__)


def derive_account_status(
    charges_enabled: bool,
    payouts_enabled: bool,
    disabled_reason: Optional[str],
) -> StripeAccountStatus:
    if charges_enabled and payouts_enabled:
        return StripeAccountStatus.COMPLETED
    if disabled_reason:
        return StripeAccountStatus.REJECTED
    return StripeAccountStatus.PENDING


async def _get_restaurant(restaurant_id) -> Restaurant:
    restaurant = await Restaurant.get_or_none(id=restaurant_id)
    if not restaurant:
        logger.error(f"[Stripe Connect] Restaurant not found: {restaurant_id}")
        raise NotFoundError("Restaurant not found", restaurant_id=str(restaurant_id))
    return restaurant


async def get_or_create_account(restaurant_id) -> str:
    """Return the restaurant's Connect account id, creating it on first use.

    A restaurant never gets a second account: an existing id is returned
    untouched, the Stripe call carries a per-restaurant idempotency key, and
    the id is only written where the column is still empty. The stored value
    is read back afterwards; any mismatch means the account just created at
    Stripe is not linked and is reported instead of being silently dropped.
    """
    logger.info(f"[Stripe Connect] Get or create account for restaurant {restaurant_id}")
    restaurant = await _get_restaurant(restaurant_id)

    if restaurant.stripe_connect_account_id:
        logger.info(f"[Stripe Connect] Existing account found: {restaurant.stripe_connect_account_id}")
        return restaurant.stripe_connect_account_id

    account = await stripe_client.create_connect_account(
        account_type=settings.STRIPE_ACCOUNT_TYPE,
        country=settings.STRIPE_DEFAULT_COUNTRY,
        metadata={"restaurant_id": str(restaurant.id)},
        idempotency_key=f"connect_account_{restaurant.id}",
    )

    await Restaurant.filter(id=restaurant.id, stripe_connect_account_id__isnull=True).update(
        stripe_connect_account_id=account.id,
        stripe_account_status=StripeAccountStatus.PENDING,
    )

    persisted = await Restaurant.get(id=restaurant.id)
    stored = persisted.stripe_connect_account_id
    if stored != account.id:
        logger.critical(
            f"[Stripe Connect] Account id not saved for restaurant {restaurant.id}: "
            f"expected {account.id}, stored {stored}. Stripe account {account.id} is orphaned."
        )
        raise InternalError(
            f"Failed to save account ID to database. Expected: {account.id}, Got: {stored or 'null'}",
            restaurant_id=str(restaurant.id),
            account_id=account.id,
        )

    logger.info(f"[Stripe Connect] New account {account.id} created for restaurant {restaurant.id}")
    return account.id


async def generate_onboarding_link(restaurant_id) -> str:
    restaurant = await _get_restaurant(restaurant_id)

    if not restaurant.stripe_connect_account_id:
        raise InvalidStateError("Stripe account not created", restaurant_id=str(restaurant.id))

    link = await stripe_client.create_account_link(
        restaurant.stripe_connect_account_id,
        refresh_url=f"{settings.FRONTEND_URL}{settings.STRIPE_REFRESH_PATH}",
        return_url=f"{settings.FRONTEND_URL}{settings.STRIPE_RETURN_PATH}",
    )
    return link.url


async def get_account_status(restaurant_id) -> dict:
    """Live status from Stripe. Never creates or writes anything."""
    restaurant = await _get_restaurant(restaurant_id)

    if not restaurant.stripe_connect_account_id:
        logger.error(f"[Stripe Connect] No Stripe account ID for restaurant: {restaurant.id}")
        raise NotFoundError(
            "Restaurant Stripe account not found. Please create an account first.",
            restaurant_id=str(restaurant.id),
        )

    account = await stripe_client.retrieve_account(restaurant.stripe_connect_account_id)
    requirements = getattr(account, "requirements", None)
    disabled_reason = getattr(requirements, "disabled_reason", None) if requirements else None

    status = derive_account_status(
        bool(account.charges_enabled), bool(account.payouts_enabled), disabled_reason
    )
    logger.info(
        f"[Stripe Connect] Account {restaurant.stripe_connect_account_id} status {status.value} "
        f"(charges={account.charges_enabled}, payouts={account.payouts_enabled})"
    )
    return {
        "status": status,
        "charges_enabled": bool(account.charges_enabled),
        "payouts_enabled": bool(account.payouts_enabled),
    }
