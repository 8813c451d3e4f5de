from fastapi import APIRouter, Depends

from app.auth import login_required
from applications.payments.schemas import RefundRecord, RefundRequest
from applications.payments.services.refunds import refund_order
from applications.user.models import User

router = APIRouter(tags=["Refunds"])


@router.post("/refund", response_model=RefundRecord)
async def refund(
    body: RefundRequest,
    user: User = Depends(login_required),
):
    """Full refund when ``amount`` is omitted. Authorization is decided per order."""
    return await refund_order(body.order_id, body.amount, user.id, user.role)
