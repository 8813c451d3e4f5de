from fastapi import APIRouter, Depends

from app.auth import role_required
from applications.payments.schemas import CreatePaymentIntentRequest
from applications.payments.services.payment_intents import create_payment_intent
from applications.user.models import User, UserRole

router = APIRouter(tags=["Payments"])


@router.post("/create-payment-intent")
async def create_intent(
    body: CreatePaymentIntentRequest,
    user: User = Depends(role_required(UserRole.USER)),
):
    client_secret = await create_payment_intent(body.order_id, user.id)
    return {"client_secret": client_secret}
