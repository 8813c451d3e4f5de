import logging

from tortoise.transactions import in_transaction

from app.errors import InvalidStateError, NotFoundError
from app.utils import stripe_client
from applications.payments.models import UserPaymentMethod
from applications.user.models import User

logger = logging.getLogger(__name__)


async def ensure_customer(user: User) -> str:
    """Stripe customer id for ``user``, created on first call only."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer = await stripe_client.create_customer(
        email=user.email,
        name=user.name,
        metadata={"user_id": user.id},
        idempotency_key=f"customer_{user.id}",
    )
    updated = await User.filter(id=user.id, stripe_customer_id__isnull=True).update(
        stripe_customer_id=customer.id
    )
    if not updated:
        await user.refresh_from_db(fields=["stripe_customer_id"])
        return user.stripe_customer_id

    user.stripe_customer_id = customer.id
    logger.info(f"Stripe customer {customer.id} created for user {user.id}")
    return customer.id


async def attach_payment_method(user: User, payment_method_id: str) -> UserPaymentMethod:
    if not user.stripe_customer_id:
        raise InvalidStateError("Stripe customer not created for this user.")

    payment_method = await stripe_client.attach_payment_method(payment_method_id, user.stripe_customer_id)
    card = getattr(payment_method, "card", None)

    async with in_transaction():
        existing = await UserPaymentMethod.get_or_none(stripe_pm_id=payment_method.id)
        if existing:
            if existing.user_id != user.id:
                raise InvalidStateError("Payment method belongs to another user.")
            logger.info(f"Payment method {payment_method.id} already attached to user {user.id}")
            return existing

        has_default = await UserPaymentMethod.filter(user_id=user.id, is_default=True).exists()
        method = await UserPaymentMethod.create(
            user_id=user.id,
            stripe_pm_id=payment_method.id,
            brand=getattr(card, "brand", None),
            last4=getattr(card, "last4", None),
            exp_month=getattr(card, "exp_month", None),
            exp_year=getattr(card, "exp_year", None),
            is_default=not has_default,
        )

    logger.info(f"Payment method {payment_method.id} attached to user {user.id} (default={method.is_default})")
    return method


async def list_payment_methods(user: User) -> list[UserPaymentMethod]:
    return await UserPaymentMethod.filter(user_id=user.id).order_by("-is_default", "-created_at")


async def _get_owned(user: User, method_id) -> UserPaymentMethod:
    method = await UserPaymentMethod.get_or_none(id=method_id, user_id=user.id)
    if not method:
        raise NotFoundError("Payment method not found")
    return method


async def remove_payment_method(user: User, method_id) -> UserPaymentMethod:
    method = await _get_owned(user, method_id)

    await stripe_client.detach_payment_method(method.stripe_pm_id)

    async with in_transaction():
        await method.delete()
        if method.is_default:
            next_method = await UserPaymentMethod.filter(user_id=user.id).order_by("-created_at").first()
            if next_method:
                next_method.is_default = True
                await next_method.save(update_fields=["is_default"])

    logger.info(f"Payment method {method.stripe_pm_id} removed for user {user.id}")
    return method


async def set_default_payment_method(user: User, method_id) -> UserPaymentMethod:
    method = await _get_owned(user, method_id)

    async with in_transaction():
        await UserPaymentMethod.filter(user_id=user.id).update(is_default=False)
        await UserPaymentMethod.filter(id=method.id).update(is_default=True)

    method.is_default = True
    return method
