from uuid import UUID

from fastapi import APIRouter, Depends

from app.auth import role_required
from applications.payments.models import UserPaymentMethod
from applications.payments.schemas import AttachPaymentMethodRequest
from applications.payments.services import payment_methods
from applications.user.models import User, UserRole

router = APIRouter(tags=["Payment Methods"])


def serialize_method(method: UserPaymentMethod) -> dict:
    return {
        "id": str(method.id),
        "stripe_pm_id": method.stripe_pm_id,
        "brand": method.brand,
        "last4": method.last4,
        "exp_month": method.exp_month,
        "exp_year": method.exp_year,
        "is_default": method.is_default,
    }


@router.post("/customer")
async def create_customer(user: User = Depends(role_required(UserRole.USER))):
    customer_id = await payment_methods.ensure_customer(user)
    return {"customer_id": customer_id}


@router.post("/payment-methods", status_code=201)
async def attach_method(
    body: AttachPaymentMethodRequest,
    user: User = Depends(role_required(UserRole.USER)),
):
    method = await payment_methods.attach_payment_method(user, body.payment_method_id)
    return serialize_method(method)


@router.get("/payment-methods")
async def list_methods(user: User = Depends(role_required(UserRole.USER))):
    methods = await payment_methods.list_payment_methods(user)
    return [serialize_method(m) for m in methods]


@router.delete("/payment-methods/{method_id}")
async def remove_method(method_id: UUID, user: User = Depends(role_required(UserRole.USER))):
    method = await payment_methods.remove_payment_method(user, method_id)
    return {"message": "Payment method removed", "id": str(method.id)}


@router.patch("/payment-methods/{method_id}/default")
async def set_default_method(method_id: UUID, user: User = Depends(role_required(UserRole.USER))):
    method = await payment_methods.set_default_payment_method(user, method_id)
    return serialize_method(method)
