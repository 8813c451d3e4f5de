import logging

from fastapi import APIRouter, HTTPException, Request
from tortoise.exceptions import BaseORMException

from app.config import settings
from app.utils.stripe_client import construct_event
from applications.payments.services.webhooks import sync_account_event, sync_payment_event, sync_subscription_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe-webhooks", tags=["Stripe Webhooks"])


@router.post("/stripe-webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    event = construct_event(payload, request.headers.get("stripe-signature"), settings.STRIPE_WEBHOOK_SECRET)

    try:
        outcome = await sync_payment_event(event)
    except BaseORMException as e:
        logger.error(f"[Webhook] Failed to apply {event.get('id')} ({event.get('type')}): {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, "outcome": outcome.value}


@router.post("/stripe-account-webhook")
async def stripe_account_webhook(request: Request):
    payload = await request.body()
    event = construct_event(
        payload, request.headers.get("stripe-signature"), settings.STRIPE_ACCOUNT_WEBHOOK_SECRET
    )

    try:
        outcome = await sync_account_event(event)
    except BaseORMException as e:
        logger.error(f"[Account Webhook] Failed to apply {event.get('id')} ({event.get('type')}): {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, "outcome": outcome.value}


@router.post("/subscription-webhook")
async def stripe_subscription_webhook(request: Request):
    payload = await request.body()
    secret = settings.STRIPE_SUBSCRIPTION_WEBHOOK_SECRET or settings.STRIPE_WEBHOOK_SECRET
    event = construct_event(payload, request.headers.get("stripe-signature"), secret)

    try:
        outcome = await sync_subscription_event(event)
    except BaseORMException as e:
        logger.error(f"[Subscription Webhook] Failed to apply {event.get('id')} ({event.get('type')}): {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, "outcome": outcome.value}
