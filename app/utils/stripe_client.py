import logging
from typing import Any, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.errors import ExternalServiceError, SignatureError

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY


async def _call(func, *args, **kwargs):
    # The SDK is blocking; keep it off the event loop.
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except stripe.StripeError as e:
        message = getattr(e, "user_message", None) or str(e)
        logger.error(f"Stripe call {getattr(func, '__qualname__', func)} failed: {message}")
        raise ExternalServiceError(f"Stripe request failed: {message}") from e


def to_plain(obj: Any) -> Any:
    """Turn a StripeObject (or plain mapping) into nested builtin dicts."""
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


# =========================
# CONNECT ACCOUNTS
# =========================
async def create_connect_account(*, account_type: str, country: str, metadata: dict, idempotency_key: str):
    return await _call(
        stripe.Account.create,
        type=account_type,
        country=country,
        capabilities={
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
        metadata=metadata,
        idempotency_key=idempotency_key,
    )


async def create_account_link(account_id: str, refresh_url: str, return_url: str):
    return await _call(
        stripe.AccountLink.create,
        account=account_id,
        refresh_url=refresh_url,
        return_url=return_url,
        type="account_onboarding",
    )


async def retrieve_account(account_id: str):
    return await _call(stripe.Account.retrieve, account_id)


# =========================
# CUSTOMERS & PAYMENT METHODS
# =========================
async def create_customer(*, email: Optional[str], name: Optional[str], metadata: dict, idempotency_key: str):
    params = {"metadata": metadata}
    if email:
        params["email"] = email
    if name:
        params["name"] = name
    return await _call(stripe.Customer.create, idempotency_key=idempotency_key, **params)


async def attach_payment_method(payment_method_id: str, customer_id: str):
    return await _call(stripe.PaymentMethod.attach, payment_method_id, customer=customer_id)


async def detach_payment_method(payment_method_id: str):
    return await _call(stripe.PaymentMethod.detach, payment_method_id)


async def set_default_customer_payment_method(customer_id: str, payment_method_id: str):
    return await _call(
        stripe.Customer.modify,
        customer_id,
        invoice_settings={"default_payment_method": payment_method_id},
    )


# =========================
# PAYMENT INTENTS & REFUNDS
# =========================
async def create_payment_intent(
    *,
    amount: int,
    currency: str,
    customer: str,
    metadata: dict,
    idempotency_key: str,
    transfer_destination: Optional[str] = None,
    application_fee: Optional[int] = None,
):
    params = {
        "amount": amount,
        "currency": currency,
        "customer": customer,
        "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        "metadata": metadata,
    }
    if transfer_destination:
        params["transfer_data"] = {"destination": transfer_destination}
        params["application_fee_amount"] = application_fee

    return await _call(stripe.PaymentIntent.create, idempotency_key=idempotency_key, **params)


async def retrieve_payment_intent(payment_intent_id: str):
    return await _call(stripe.PaymentIntent.retrieve, payment_intent_id)


async def create_refund(
    *,
    payment_intent: str,
    metadata: dict,
    idempotency_key: str,
    amount: Optional[int] = None,
):
    params = {"payment_intent": payment_intent, "metadata": metadata}
    if amount is not None:
        params["amount"] = amount
    return await _call(stripe.Refund.create, idempotency_key=idempotency_key, **params)


# =========================
# PLANS & SUBSCRIPTIONS
# =========================
async def create_plan_price(*, name: str, unit_amount: int, currency: str, interval: str, metadata: dict):
    product = await _call(stripe.Product.create, name=name, metadata=metadata)
    return await _call(
        stripe.Price.create,
        product=product.id,
        unit_amount=unit_amount,
        currency=currency,
        recurring={"interval": interval},
        metadata=metadata,
    )


async def create_subscription(*, customer: str, price: str, metadata: dict, idempotency_key: str):
    # Stays incomplete until the first invoice is paid with the returned client secret.
    return await _call(
        stripe.Subscription.create,
        customer=customer,
        items=[{"price": price}],
        payment_behavior="default_incomplete",
        payment_settings={
            "payment_method_types": ["card"],
            "save_default_payment_method": "on_subscription",
        },
        expand=["latest_invoice.confirmation_secret"],
        metadata=metadata,
        idempotency_key=idempotency_key,
    )


async def retrieve_subscription(subscription_id: str, expand: Optional[list] = None):
    if expand:
        return await _call(stripe.Subscription.retrieve, subscription_id, expand=expand)
    return await _call(stripe.Subscription.retrieve, subscription_id)


async def modify_subscription(subscription_id: str, **params):
    return await _call(stripe.Subscription.modify, subscription_id, **params)


async def cancel_subscription(subscription_id: str):
    return await _call(stripe.Subscription.cancel, subscription_id)


async def pay_invoice(invoice_id: str, payment_method_id: str):
    return await _call(stripe.Invoice.pay, invoice_id, payment_method=payment_method_id)


# =========================
# WEBHOOKS
# =========================
def construct_event(payload: bytes, sig_header: Optional[str], secret: str) -> dict:
    if not sig_header:
        raise SignatureError("Missing stripe-signature")
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, secret)
    except ValueError:
        raise SignatureError("Invalid payload")
    except stripe.SignatureVerificationError:
        raise SignatureError("Invalid signature")
    return to_plain(event)
