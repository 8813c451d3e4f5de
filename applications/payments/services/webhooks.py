"""Apply Stripe webhook events to orders, restaurants and subscriptions exactly once.

``StripeEvent`` is the idempotency ledger. A ledger row is written in the
same transaction as the side effect it guards, so a crash leaves neither or
both. Concurrent deliveries of one event race on the ledger primary key; the
loser's ``IntegrityError`` means "already handled".
"""
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from tortoise.exceptions import BaseORMException, IntegrityError
from tortoise.timezone import now
from tortoise.transactions import in_transaction

from app.config import settings
from app.utils import stripe_client
from applications.orders.models import Order, PaymentStatus
from applications.payments.models import StripeEvent
from applications.payments.services.connect_account import derive_account_status
from applications.payments.services.events import (
    ChargeRefunded,
    InvoiceChanged,
    PaymentIntentFailed,
    PaymentIntentObject,
    PaymentIntentSucceeded,
    RefundUpdated,
    SubscriptionChanged,
    SubscriptionObject,
    parse_account_event,
    parse_payment_event,
    parse_subscription_event,
)
from applications.payments.services.subscriptions import add_interval, from_timestamp
from applications.restaurant.models import Restaurant
from applications.subscription.models import RestaurantSubscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOOP = "noop"
    UNRESOLVED = "unresolved"
    ORPHAN = "orphan"


async def is_event_processed(event_id: str) -> bool:
    try:
        return await StripeEvent.filter(id=event_id).exists()
    except BaseORMException as e:
        if not settings.WEBHOOK_IDEMPOTENCY_FAIL_OPEN:
            raise
        # The ledger insert inside the update transaction still rejects a true duplicate.
        logger.error(f"[Webhook] Idempotency check failed for {event_id}, continuing without it: {e}")
        return False


# =========================
# ACCOUNT EVENTS
# =========================
async def sync_account_event(raw: dict) -> WebhookOutcome:
    event = parse_account_event(raw)
    if event is None:
        return WebhookOutcome.IGNORED

    if await is_event_processed(event.id):
        logger.info(f"[Account Webhook] Event already processed, skipping: {event.id}")
        return WebhookOutcome.DUPLICATE

    account = event.data.object
    status = derive_account_status(account.charges_enabled, account.payouts_enabled, account.disabled_reason)
    bank_account_added = account.has_bank_account
    logger.info(
        f"[Account Webhook] {event.id}: account {account.id} -> {status.value} "
        f"(charges={account.charges_enabled}, payouts={account.payouts_enabled}, "
        f"due={len(account.requirements.currently_due) if account.requirements else 0}, "
        f"disabled_reason={account.disabled_reason}, bank={bank_account_added})"
    )

    restaurant = await Restaurant.get_or_none(stripe_connect_account_id=account.id)
    if not restaurant:
        # Webhooks only update accounts this service created; never link or create here.
        logger.warning(f"[Account Webhook] ORPHAN ACCOUNT IGNORED: {account.id} has no restaurant ({event.id})")
        try:
            await StripeEvent.create(id=event.id, type=event.type)
        except IntegrityError:
            return WebhookOutcome.DUPLICATE
        except BaseORMException as e:
            # Nothing was changed, so a lost ledger row only means a replay is ignored again.
            logger.error(f"[Account Webhook] Could not record orphan event {event.id}: {e}")
        return WebhookOutcome.ORPHAN

    try:
        async with in_transaction():
            await StripeEvent.create(id=event.id, type=event.type)
            await Restaurant.filter(id=restaurant.id).update(
                stripe_account_status=status,
                bank_account_added=bank_account_added,
            )
    except IntegrityError:
        logger.info(f"[Account Webhook] Event {event.id} recorded concurrently, skipping")
        return WebhookOutcome.DUPLICATE

    logger.info(f"[Account Webhook] Restaurant {restaurant.id} updated from {event.id}")
    return WebhookOutcome.PROCESSED


# =========================
# PAYMENT EVENTS
# =========================
async def _order_from_intent(intent: PaymentIntentObject, event_id: str) -> Optional[Order]:
    order_id = intent.metadata.get("order_id")
    if not order_id:
        logger.warning(f"[Webhook] {event_id}: no order_id in metadata of {intent.id}")
        return None
    try:
        uuid.UUID(order_id)
    except ValueError:
        logger.warning(f"[Webhook] {event_id}: malformed order_id {order_id!r}")
        return None

    order = await Order.select_for_update().get_or_none(id=order_id)
    if not order:
        logger.warning(f"[Webhook] {event_id}: order not found: {order_id}")
    return order


async def _order_from_payment_intent_id(payment_intent_id: Optional[str], event_id: str) -> Optional[Order]:
    if not payment_intent_id:
        logger.warning(f"[Webhook] {event_id}: refund carries no payment intent")
        return None
    order = await Order.select_for_update().get_or_none(stripe_payment_intent_id=payment_intent_id)
    if not order:
        logger.warning(f"[Webhook] {event_id}: no order found for payment intent {payment_intent_id}")
    return order


async def _on_intent_succeeded(event: PaymentIntentSucceeded) -> WebhookOutcome:
    order = await _order_from_intent(event.data.object, event.id)
    if not order:
        return WebhookOutcome.UNRESOLVED

    if order.payment_status == PaymentStatus.PAID:
        logger.info(f"[Webhook] {event.id}: order {order.id} already paid, skipping")
        return WebhookOutcome.NOOP

    await Order.filter(id=order.id).update(payment_status=PaymentStatus.PAID, paid_at=now())
    logger.info(f"[Webhook] {event.id}: order {order.id} marked as paid")
    return WebhookOutcome.PROCESSED


async def _on_intent_failed(event: PaymentIntentFailed) -> WebhookOutcome:
    order = await _order_from_intent(event.data.object, event.id)
    if not order:
        return WebhookOutcome.UNRESOLVED

    await Order.filter(id=order.id).update(payment_status=PaymentStatus.FAILED)
    logger.info(f"[Webhook] {event.id}: order {order.id} marked as failed")
    return WebhookOutcome.PROCESSED


async def _on_charge_refunded(event: ChargeRefunded) -> WebhookOutcome:
    charge = event.data.object
    order = await _order_from_payment_intent_id(charge.payment_intent, event.id)
    if not order:
        return WebhookOutcome.UNRESOLVED

    # Partial and full refunds both end as REFUNDED; the amount keeps the difference.
    is_full_refund = charge.amount_refunded == charge.amount
    await Order.filter(id=order.id).update(
        payment_status=PaymentStatus.REFUNDED,
        refunded_amount=charge.amount_refunded,
    )
    logger.info(
        f"[Webhook] {event.id}: order {order.id} marked as refunded "
        f"({charge.amount_refunded}/{charge.amount}, full={is_full_refund})"
    )
    return WebhookOutcome.PROCESSED


async def _on_refund_updated(event: RefundUpdated) -> WebhookOutcome:
    refund = event.data.object
    order = await _order_from_payment_intent_id(refund.payment_intent, event.id)
    if not order:
        return WebhookOutcome.UNRESOLVED

    # A single refund's amount; never lower a cumulative total set by charge.refunded.
    await Order.filter(id=order.id).update(
        payment_status=PaymentStatus.REFUNDED,
        refunded_amount=max(order.refunded_amount, refund.amount),
    )
    logger.info(
        f"[Webhook] {event.id}: order {order.id} marked as refunded "
        f"(refund {refund.id} {refund.amount}, status={refund.status})"
    )
    return WebhookOutcome.PROCESSED


PAYMENT_EVENT_HANDLERS = {
    PaymentIntentSucceeded: _on_intent_succeeded,
    PaymentIntentFailed: _on_intent_failed,
    ChargeRefunded: _on_charge_refunded,
    RefundUpdated: _on_refund_updated,
}


async def sync_payment_event(raw: dict) -> WebhookOutcome:
    event = parse_payment_event(raw)
    if event is None:
        return WebhookOutcome.IGNORED

    if await is_event_processed(event.id):
        logger.info(f"[Webhook] Event already processed, skipping: {event.id}")
        return WebhookOutcome.DUPLICATE

    handler = PAYMENT_EVENT_HANDLERS[type(event)]
    try:
        async with in_transaction():
            await StripeEvent.create(id=event.id, type=event.type)
            outcome = await handler(event)
    except IntegrityError:
        logger.info(f"[Webhook] Event {event.id} recorded concurrently, skipping")
        return WebhookOutcome.DUPLICATE

    logger.info(f"[Webhook] Event {event.id} ({event.type}) done: {outcome.value}")
    return outcome


# =========================
# SUBSCRIPTION EVENTS
# =========================
STRIPE_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.INCOMPLETE,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "past_due": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "unpaid": SubscriptionStatus.CANCELLED,
    "canceled": SubscriptionStatus.CANCELLED,
}

INVOICE_EVENT_STATUS = {
    "invoice.payment_succeeded": SubscriptionStatus.ACTIVE,
    "invoice.payment_failed": SubscriptionStatus.EXPIRED,
    "invoice.voided": SubscriptionStatus.EXPIRED,
    "invoice.marked_uncollectible": SubscriptionStatus.EXPIRED,
    "invoice.payment_action_required": SubscriptionStatus.INCOMPLETE,
}


async def _subscription_for(stripe_subscription_id: Optional[str], event_id: str) -> Optional[RestaurantSubscription]:
    if not stripe_subscription_id:
        logger.info(f"[Subscription Webhook] {event_id}: invoice is not for a subscription")
        return None
    subscription = await RestaurantSubscription.select_for_update().get_or_none(
        stripe_subscription_id=stripe_subscription_id
    )
    if not subscription:
        logger.warning(f"[Subscription Webhook] {event_id}: no subscription found for {stripe_subscription_id}")
    return subscription


async def _period_end(event) -> Optional[datetime]:
    """Current period end, read from Stripe when the event does not carry it."""
    if isinstance(event, SubscriptionChanged):
        return from_timestamp(event.data.object.period_end)

    invoice = event.data.object
    if event.type != "invoice.payment_succeeded" or not invoice.subscription_id:
        return None
    stripe_subscription = await stripe_client.retrieve_subscription(invoice.subscription_id)
    return from_timestamp(SubscriptionObject.model_validate(stripe_client.to_plain(stripe_subscription)).period_end)


async def _on_subscription_changed(event: SubscriptionChanged, period_end: Optional[datetime]) -> WebhookOutcome:
    stripe_subscription = event.data.object
    subscription = await _subscription_for(stripe_subscription.id, event.id)
    if not subscription:
        return WebhookOutcome.UNRESOLVED

    updates = {}
    if event.type == "customer.subscription.deleted":
        updates = {"status": SubscriptionStatus.CANCELLED, "end_date": now()}
    elif subscription.status == SubscriptionStatus.CANCELLED:
        logger.info(f"[Subscription Webhook] {event.id}: subscription {subscription.id} already cancelled")
        return WebhookOutcome.NOOP
    elif event.type == "customer.subscription.created":
        if subscription.end_date is None:
            plan = await subscription.plan
            updates["end_date"] = period_end or add_interval(subscription.start_date, plan.interval)
    else:
        status = STRIPE_SUBSCRIPTION_STATUS.get(stripe_subscription.status)
        if status is None:
            logger.warning(f"[Subscription Webhook] {event.id}: unmapped Stripe status {stripe_subscription.status!r}")
        else:
            updates["status"] = status
        if period_end:
            updates["end_date"] = period_end

    if not updates:
        return WebhookOutcome.NOOP

    await RestaurantSubscription.filter(id=subscription.id).update(**updates)
    logger.info(f"[Subscription Webhook] {event.id}: subscription {subscription.id} updated {list(updates)}")
    return WebhookOutcome.PROCESSED


async def _on_invoice_changed(event: InvoiceChanged, period_end: Optional[datetime]) -> WebhookOutcome:
    invoice = event.data.object
    subscription = await _subscription_for(invoice.subscription_id, event.id)
    if not subscription:
        return WebhookOutcome.UNRESOLVED

    if subscription.status == SubscriptionStatus.CANCELLED:
        logger.info(f"[Subscription Webhook] {event.id}: subscription {subscription.id} already cancelled")
        return WebhookOutcome.NOOP

    status = INVOICE_EVENT_STATUS[event.type]
    updates = {"status": status}
    if status == SubscriptionStatus.ACTIVE and period_end:
        updates["end_date"] = period_end

    await RestaurantSubscription.filter(id=subscription.id).update(**updates)
    logger.info(
        f"[Subscription Webhook] {event.id}: subscription {subscription.id} -> {status.value} (invoice {invoice.id})"
    )
    return WebhookOutcome.PROCESSED


SUBSCRIPTION_EVENT_HANDLERS = {
    SubscriptionChanged: _on_subscription_changed,
    InvoiceChanged: _on_invoice_changed,
}


async def sync_subscription_event(raw: dict) -> WebhookOutcome:
    event = parse_subscription_event(raw)
    if event is None:
        return WebhookOutcome.IGNORED

    if await is_event_processed(event.id):
        logger.info(f"[Subscription Webhook] Event already processed, skipping: {event.id}")
        return WebhookOutcome.DUPLICATE

    # Gateway reads happen before the transaction opens.
    period_end = await _period_end(event)

    handler = SUBSCRIPTION_EVENT_HANDLERS[type(event)]
    try:
        async with in_transaction():
            await StripeEvent.create(id=event.id, type=event.type)
            outcome = await handler(event, period_end)
    except IntegrityError:
        logger.info(f"[Subscription Webhook] Event {event.id} recorded concurrently, skipping")
        return WebhookOutcome.DUPLICATE

    logger.info(f"[Subscription Webhook] Event {event.id} ({event.type}) done: {outcome.value}")
    return outcome
