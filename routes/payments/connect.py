import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from app.auth import role_required
from app.errors import NotFoundError, UnauthorizedError
from applications.payments.schemas import AccountStatusResponse
from applications.payments.services import connect_account
from applications.restaurant.models import Restaurant
from applications.user.models import User, UserRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["Stripe Connect"])


async def resolve_restaurant_id(user: User, restaurant_id: Optional[UUID]) -> UUID:
    """Admins name the restaurant; restaurant users act on the one they own."""
    if user.role == UserRole.ADMIN:
        if not restaurant_id:
            raise HTTPException(status_code=400, detail="restaurant_id is required")
        return restaurant_id

    restaurant = await Restaurant.get_or_none(owner_id=user.id)
    if not restaurant:
        raise NotFoundError("No restaurant registered for this account")
    if restaurant_id and restaurant_id != restaurant.id:
        logger.warning(f"[Stripe Connect] {user.id} tried to act on restaurant {restaurant_id}")
        raise UnauthorizedError("You can only manage your own restaurant")
    return restaurant.id


@router.post("/onboard")
async def onboard_restaurant(
    restaurant_id: Optional[UUID] = None,
    user: User = Depends(role_required(UserRole.RESTAURANT)),
):
    target = await resolve_restaurant_id(user, restaurant_id)
    account_id = await connect_account.get_or_create_account(target)
    onboarding_url = await connect_account.generate_onboarding_link(target)
    return {"account_id": account_id, "onboarding_url": onboarding_url}


@router.get("/onboard-link")
async def onboarding_link(
    restaurant_id: Optional[UUID] = None,
    user: User = Depends(role_required(UserRole.RESTAURANT)),
):
    target = await resolve_restaurant_id(user, restaurant_id)
    return {"url": await connect_account.generate_onboarding_link(target)}


@router.get("/status", response_model=AccountStatusResponse)
async def account_status(
    restaurant_id: Optional[UUID] = None,
    user: User = Depends(role_required(UserRole.RESTAURANT)),
):
    target = await resolve_restaurant_id(user, restaurant_id)
    return await connect_account.get_account_status(target)
