import logging
from decimal import Decimal, ROUND_HALF_UP

from app.config import settings
from app.errors import InvalidStateError, NotFoundError, UnauthorizedError
from app.utils import stripe_client
from applications.orders.models import Order, PaymentMethod, PaymentStatus
from applications.restaurant.models import Restaurant, StripeAccountStatus
from applications.payments.services.events import (
    REPLACEABLE_INTENT_STATES,
    REUSABLE_INTENT_STATES,
    parse_intent_state,
)

logger = logging.getLogger(__name__)


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def compute_commission(amount_minor: int, rate) -> int:
    return int((Decimal(amount_minor) * Decimal(str(rate))).to_integral_value(rounding=ROUND_HALF_UP))


def commission_rate_for(restaurant: Restaurant) -> float:
    if restaurant.commission_rate is not None:
        return restaurant.commission_rate
    return settings.DEFAULT_COMMISSION_RATE


def is_split_payment(restaurant: Restaurant) -> bool:
    return bool(
        restaurant.stripe_connect_account_id
        and restaurant.stripe_account_status == StripeAccountStatus.COMPLETED
    )


async def create_payment_intent(order_id, requesting_user_id: str) -> str:
    """Create (or reuse) the order's PaymentIntent and return its client secret."""
    order = await Order.get_or_none(id=order_id).prefetch_related("user", "restaurant")
    if not order:
        logger.error(f"[Payment Intent] Order not found: {order_id}")
        raise NotFoundError("Order not found", order_id=str(order_id))

    if order.user_id != requesting_user_id:
        logger.error(
            f"[Payment Intent] Unauthorized payment attempt on order {order.id} "
            f"(owner {order.user_id}, requester {requesting_user_id})"
        )
        raise UnauthorizedError("You are not authorized to pay for this order.")

    if order.payment_method != PaymentMethod.CARD:
        logger.error(f"[Payment Intent] Order {order.id} payment method is {order.payment_method.value}")
        raise InvalidStateError("Order payment method is not CARD")

    customer_id = order.user.stripe_customer_id
    if not customer_id:
        logger.error(f"[Payment Intent] User {order.user_id} has no Stripe customer ID")
        raise InvalidStateError("User does not have a Stripe customer ID. Please add a payment method first.")

    if order.payment_status == PaymentStatus.PAID:
        logger.error(f"[Payment Intent] Order already paid: {order.id}")
        raise InvalidStateError("Order already paid")

    amount = to_minor_units(order.total)
    if amount <= 0:
        raise InvalidStateError("Order total must be positive")

    idempotency_key = f"order_{order.id}"

    if order.stripe_payment_intent_id:
        existing = await stripe_client.retrieve_payment_intent(order.stripe_payment_intent_id)
        state = parse_intent_state(existing.status)

        if state in REUSABLE_INTENT_STATES:
            logger.info(f"[Payment Intent] Reusing {existing.id} ({state.value}) for order {order.id}")
            return existing.client_secret

        if state not in REPLACEABLE_INTENT_STATES:
            logger.warning(
                f"[Payment Intent] Intent {existing.id} for order {order.id} is {existing.status}; "
                f"refusing to create another"
            )
            raise InvalidStateError("A payment for this order is already being processed")

        # Same key would hand back the canceled intent.
        idempotency_key = f"order_{order.id}_after_{existing.id}"

    currency = settings.STRIPE_CURRENCY.lower()
    restaurant = order.restaurant
    metadata = {
        "order_id": str(order.id),
        "user_id": order.user_id,
        "restaurant_id": str(order.restaurant_id),
    }

    logger.info(
        f"[Payment Intent] Creating payment intent for order {order.id}: "
        f"{amount} {currency}, split={is_split_payment(restaurant)}"
    )

    if is_split_payment(restaurant):
        commission = compute_commission(amount, commission_rate_for(restaurant))
        intent = await stripe_client.create_payment_intent(
            amount=amount,
            currency=currency,
            customer=customer_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
            transfer_destination=restaurant.stripe_connect_account_id,
            application_fee=commission,
        )
    else:
        intent = await stripe_client.create_payment_intent(
            amount=amount,
            currency=currency,
            customer=customer_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    await Order.filter(id=order.id).update(stripe_payment_intent_id=intent.id)

    logger.info(f"[Payment Intent] Payment intent {intent.id} saved on order {order.id}")
    return intent.client_secret
