import logging
import time
import uuid
from decimal import Decimal
from typing import Optional

from app.errors import InvalidStateError, NotFoundError, UnauthorizedError
from app.utils import stripe_client
from applications.orders.models import Order, PaymentMethod, PaymentStatus
from applications.payments.schemas import RefundRecord, RefundType
from applications.payments.services.payment_intents import to_minor_units
from applications.user.models import UserRole

logger = logging.getLogger(__name__)


def _is_restaurant_owner(order: Order, user_id: str, role: UserRole) -> bool:
    return role == UserRole.RESTAURANT and order.restaurant.owner_id == user_id


async def refund_order(
    order_id,
    amount: Optional[int],
    requesting_user_id: str,
    requesting_role: UserRole,
) -> RefundRecord:
    """Refund a paid order. ``amount`` is in minor units; ``None`` means the full total.

    Cash orders are settled here directly. Gateway refunds are only requested
    from Stripe; the order becomes REFUNDED when the refund webhook arrives.
    """
    logger.info(
        f"[Refund] Attempting refund for order {order_id} "
        f"(amount={amount if amount is not None else 'full'}, by {requesting_user_id}/{requesting_role})"
    )

    order = await Order.get_or_none(id=order_id).prefetch_related("restaurant")
    if not order:
        logger.error(f"[Refund] Order not found: {order_id}")
        raise NotFoundError("Order not found", order_id=str(order_id))

    if amount is not None and amount <= 0:
        raise InvalidStateError("Refund amount must be positive")

    if order.payment_method == PaymentMethod.CASH:
        return await _refund_cash_order(order, amount, requesting_user_id, requesting_role)
    return await _refund_gateway_order(order, amount, requesting_user_id, requesting_role)


async def _refund_cash_order(order: Order, amount, user_id: str, role: UserRole) -> RefundRecord:
    if order.payment_status != PaymentStatus.PAID:
        logger.error(f"[Refund] COD order {order.id} not paid, status: {order.payment_status.value}")
        raise InvalidStateError("Order is not refundable - payment not collected")

    # The customer cannot mark their own cash as returned.
    if role != UserRole.ADMIN and not _is_restaurant_owner(order, user_id, role):
        logger.error(f"[Refund] Unauthorized COD refund attempt on order {order.id} by {user_id}")
        raise UnauthorizedError("Unauthorized: You do not have permission to refund this order")

    refund_amount = Decimal(amount) / 100 if amount is not None else order.total
    if refund_amount > order.total:
        logger.error(f"[Refund] COD refund {refund_amount} exceeds order total {order.total} ({order.id})")
        raise InvalidStateError("Refund amount cannot exceed order total")

    refund_minor = to_minor_units(refund_amount)
    await Order.filter(id=order.id).update(
        payment_status=PaymentStatus.REFUNDED,
        refunded_amount=refund_minor,
    )
    logger.info(f"[Refund] COD refund recorded for order {order.id}: {refund_minor}, manual cash return required")

    return RefundRecord(
        id=f"cod_refund_{order.id}_{int(time.time() * 1000)}",
        amount=refund_minor,
        status="succeeded",
        order_id=order.id,
        type=RefundType.CASH,
        note="Manual cash return required - refund status updated in system",
    )


async def _refund_gateway_order(order: Order, amount, user_id: str, role: UserRole) -> RefundRecord:
    if not order.stripe_payment_intent_id:
        logger.error(f"[Refund] No payment intent found for order: {order.id}")
        raise InvalidStateError("No payment to refund")

    if order.payment_status != PaymentStatus.PAID:
        logger.error(f"[Refund] Order {order.id} not paid, status: {order.payment_status.value}")
        raise InvalidStateError("Order is not refundable")

    if role != UserRole.ADMIN and not _is_restaurant_owner(order, user_id, role) and order.user_id != user_id:
        logger.error(f"[Refund] Unauthorized refund attempt on order {order.id} by {user_id}")
        raise UnauthorizedError("Unauthorized: You do not have permission to refund this order")

    order_total = to_minor_units(order.total)
    if amount is not None and amount > order_total:
        logger.error(f"[Refund] Refund amount {amount} exceeds order total {order_total} ({order.id})")
        raise InvalidStateError("Refund amount cannot exceed order total")

    intent = await stripe_client.retrieve_payment_intent(order.stripe_payment_intent_id)
    if not intent.latest_charge:
        logger.error(f"[Refund] No charge found for payment intent {order.stripe_payment_intent_id}")
        raise InvalidStateError("No charge found")

    refund = await stripe_client.create_refund(
        payment_intent=order.stripe_payment_intent_id,
        amount=amount,
        metadata={"order_id": str(order.id), "refunded_by": user_id or "system"},
        idempotency_key=f"refund_{order.id}_{uuid.uuid4().hex}",
    )
    logger.info(f"[Refund] Refund {refund.id} created for order {order.id}: {refund.amount} ({refund.status})")

    return RefundRecord(
        id=refund.id,
        amount=refund.amount,
        status=refund.status,
        order_id=order.id,
        type=RefundType.GATEWAY,
    )
