from uuid import UUID

from fastapi import APIRouter, Depends

from app.auth import login_required
from app.errors import NotFoundError, UnauthorizedError
from applications.orders.models import Order
from applications.user.models import User, UserRole

router = APIRouter(tags=["Orders"])


def can_view_payment(order: Order, user: User) -> bool:
    if user.role == UserRole.ADMIN or order.user_id == user.id:
        return True
    return user.role == UserRole.RESTAURANT and order.restaurant.owner_id == user.id


@router.get("/{order_id}/payment")
async def order_payment(order_id: UUID, user: User = Depends(login_required)):
    order = await Order.get_or_none(id=order_id).prefetch_related("restaurant")
    if not order:
        raise NotFoundError("Order not found", order_id=str(order_id))
    if not can_view_payment(order, user):
        raise UnauthorizedError("You are not allowed to view this order")

    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "payment_method": order.payment_method.value,
        "payment_status": order.payment_status.value,
        "total": str(order.total),
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "refunded_amount": order.refunded_amount,
        "has_payment_intent": bool(order.stripe_payment_intent_id),
    }
