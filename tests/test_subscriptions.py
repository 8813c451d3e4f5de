import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
import stripe
from tortoise.exceptions import OperationalError

from app.errors import ExternalServiceError, InvalidStateError, NotFoundError
from applications.payments.models import StripeEvent
from applications.payments.services import subscriptions, webhooks
from applications.payments.services.subscriptions import add_interval
from applications.payments.services.webhooks import WebhookOutcome, sync_subscription_event
from applications.restaurant.models import Restaurant
from applications.subscription.models import (
    PlanInterval,
    RestaurantSubscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from tests.factories import make_restaurant, stripe_obj

PERIOD_END = 1767225600  # 2026-01-01 00:00 UTC


@pytest.fixture
async def plan():
    return await SubscriptionPlan.create(
        name="Basic", price=Decimal("29.99"), interval=PlanInterval.MONTHLY, stripe_price_id="price_basic"
    )


@pytest.fixture
async def pro_plan():
    return await SubscriptionPlan.create(
        name="Pro", price=Decimal("299.00"), interval=PlanInterval.YEARLY, stripe_price_id="price_pro"
    )


@pytest.fixture
async def subscription(connected_restaurant, plan):
    await Restaurant.filter(id=connected_restaurant.id).update(stripe_customer_id="cus_rest")
    return await RestaurantSubscription.create(
        restaurant=connected_restaurant,
        plan=plan,
        stripe_subscription_id="sub_1",
        status=SubscriptionStatus.ACTIVE,
        start_date=datetime(2025, 12, 1, tzinfo=timezone.utc),
        end_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


def subscription_event(event_id, event_type, subscription_id="sub_1", status="active", period_end=None):
    obj = {"id": subscription_id, "status": status}
    if period_end:
        obj["current_period_end"] = period_end
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def invoice_event(event_id, event_type, subscription_id="sub_1", nested=False):
    obj = {"id": "in_1", "status": "paid"}
    if nested:
        obj["parent"] = {"subscription_details": {"subscription": subscription_id}}
    else:
        obj["subscription"] = subscription_id
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.mark.parametrize(
    "start, interval, expected",
    [
        (datetime(2026, 1, 31), PlanInterval.MONTHLY, datetime(2026, 2, 28)),
        (datetime(2025, 12, 15), PlanInterval.MONTHLY, datetime(2026, 1, 15)),
        (datetime(2024, 2, 29), PlanInterval.YEARLY, datetime(2025, 2, 28)),
    ],
)
def test_add_interval(start, interval, expected):
    assert add_interval(start, interval) == expected


# =========================
# PLANS
# =========================
async def test_create_plan_creates_stripe_price(mocker):
    product = mocker.patch("stripe.Product.create", return_value=stripe_obj(id="prod_1"))
    price = mocker.patch("stripe.Price.create", return_value=stripe_obj(id="price_new"))

    plan = await subscriptions.create_plan("Premium", Decimal("49.99"), PlanInterval.YEARLY, {"promo_slots": 3})

    assert product.call_args.kwargs["name"] == "Premium"
    kwargs = price.call_args.kwargs
    assert kwargs["product"] == "prod_1"
    assert kwargs["unit_amount"] == 4999
    assert kwargs["currency"] == "usd"
    assert kwargs["recurring"] == {"interval": "year"}
    stored = await SubscriptionPlan.get(id=plan.id)
    assert stored.stripe_price_id == "price_new"
    assert stored.features == {"promo_slots": 3}


async def test_deactivated_plan_is_hidden(plan, pro_plan):
    await subscriptions.deactivate_plan(pro_plan.id)

    assert [p.id for p in await subscriptions.list_plans()] == [plan.id]


async def test_update_plan_keeps_price(plan):
    updated = await subscriptions.update_plan(plan.id, name="Starter", features={"listing": True})

    assert updated.name == "Starter"
    assert updated.features == {"listing": True}
    assert updated.price == Decimal("29.99")
    assert updated.stripe_price_id == "price_basic"


async def test_unknown_plan_is_not_found():
    with pytest.raises(NotFoundError):
        await subscriptions.update_plan(uuid.uuid4(), name="x")


# =========================
# SUBSCRIBE
# =========================
def mock_subscribe_gateway(mocker, charges_enabled=True):
    mocker.patch("stripe.Account.retrieve", return_value=stripe_obj(id="acct_connected_1", charges_enabled=charges_enabled))
    customer = mocker.patch("stripe.Customer.create", return_value=stripe_obj(id="cus_rest"))
    create = mocker.patch(
        "stripe.Subscription.create",
        return_value=stripe_obj(
            id="sub_new",
            latest_invoice=stripe_obj(id="in_1", confirmation_secret=stripe_obj(client_secret="in_1_secret")),
        ),
    )
    return customer, create


async def test_subscribe_starts_incomplete(mocker, connected_restaurant, plan):
    customer, create = mock_subscribe_gateway(mocker)

    subscription, client_secret = await subscriptions.create_subscription(connected_restaurant.id, plan.id)

    assert client_secret == "in_1_secret"
    assert subscription.status == SubscriptionStatus.INCOMPLETE
    assert subscription.stripe_subscription_id == "sub_new"
    assert subscription.end_date > subscription.start_date

    assert customer.call_args.kwargs["idempotency_key"] == f"restaurant_customer_{connected_restaurant.id}"
    assert customer.call_args.kwargs["metadata"]["connect_account_id"] == "acct_connected_1"
    kwargs = create.call_args.kwargs
    assert kwargs["customer"] == "cus_rest"
    assert kwargs["items"] == [{"price": "price_basic"}]
    assert kwargs["payment_behavior"] == "default_incomplete"
    assert kwargs["idempotency_key"] == f"subscription_{connected_restaurant.id}_{plan.id}_0"
    assert (await Restaurant.get(id=connected_restaurant.id)).stripe_customer_id == "cus_rest"


async def test_subscribe_reuses_billing_customer(mocker, connected_restaurant, plan):
    await Restaurant.filter(id=connected_restaurant.id).update(stripe_customer_id="cus_existing")
    customer, create = mock_subscribe_gateway(mocker)

    await subscriptions.create_subscription(connected_restaurant.id, plan.id)

    customer.assert_not_called()
    assert create.call_args.kwargs["customer"] == "cus_existing"


async def test_subscribe_requires_connect_account(mocker, restaurant, plan):
    retrieve = mocker.patch("stripe.Account.retrieve")

    with pytest.raises(InvalidStateError):
        await subscriptions.create_subscription(restaurant.id, plan.id)
    retrieve.assert_not_called()


async def test_subscribe_requires_charges_enabled(mocker, connected_restaurant, plan):
    _, create = mock_subscribe_gateway(mocker, charges_enabled=False)

    with pytest.raises(InvalidStateError):
        await subscriptions.create_subscription(connected_restaurant.id, plan.id)
    create.assert_not_called()


async def test_subscribe_rejects_second_open_subscription(mocker, subscription, pro_plan):
    _, create = mock_subscribe_gateway(mocker)

    with pytest.raises(InvalidStateError):
        await subscriptions.create_subscription(subscription.restaurant_id, pro_plan.id)
    create.assert_not_called()


async def test_subscribe_to_retired_plan(mocker, connected_restaurant, plan):
    await subscriptions.deactivate_plan(plan.id)
    _, create = mock_subscribe_gateway(mocker)

    with pytest.raises(InvalidStateError):
        await subscriptions.create_subscription(connected_restaurant.id, plan.id)
    create.assert_not_called()


# =========================
# MANAGE
# =========================
async def test_update_swaps_subscription_price(mocker, subscription, pro_plan):
    mocker.patch("stripe.Subscription.retrieve", return_value={"id": "sub_1", "items": {"data": [{"id": "si_1"}]}})
    modify = mocker.patch("stripe.Subscription.modify", return_value=stripe_obj(id="sub_1"))

    updated = await subscriptions.update_subscription(subscription.id, pro_plan.id, subscription.restaurant_id)

    modify.assert_called_once_with("sub_1", items=[{"id": "si_1", "price": "price_pro"}])
    assert updated.plan_id == pro_plan.id
    assert (await RestaurantSubscription.get(id=subscription.id)).plan_id == pro_plan.id


async def test_update_is_scoped_to_restaurant(mocker, subscription, pro_plan):
    other = await make_restaurant()
    modify = mocker.patch("stripe.Subscription.modify")

    with pytest.raises(NotFoundError):
        await subscriptions.update_subscription(subscription.id, pro_plan.id, other.id)
    modify.assert_not_called()


async def test_cancel_subscription_once(mocker, subscription):
    cancel = mocker.patch("stripe.Subscription.cancel", return_value=stripe_obj(id="sub_1", status="canceled"))

    first = await subscriptions.cancel_subscription(subscription.id)
    second = await subscriptions.cancel_subscription(subscription.id)

    cancel.assert_called_once_with("sub_1")
    assert first.status == second.status == SubscriptionStatus.CANCELLED
    stored = await RestaurantSubscription.get(id=subscription.id)
    assert stored.status == SubscriptionStatus.CANCELLED
    assert stored.end_date.date() != date(2026, 1, 1)


async def test_cannot_change_plan_of_cancelled_subscription(mocker, subscription, pro_plan):
    await RestaurantSubscription.filter(id=subscription.id).update(status=SubscriptionStatus.CANCELLED)
    retrieve = mocker.patch("stripe.Subscription.retrieve")

    with pytest.raises(InvalidStateError):
        await subscriptions.update_subscription(subscription.id, pro_plan.id)
    retrieve.assert_not_called()


async def test_attach_payment_method_pays_open_invoice(mocker, subscription):
    mocker.patch("stripe.PaymentMethod.attach", return_value=stripe_obj(id="pm_1"))
    set_default = mocker.patch("stripe.Customer.modify", return_value=stripe_obj(id="cus_rest"))
    modify = mocker.patch(
        "stripe.Subscription.modify",
        return_value=stripe_obj(id="sub_1", latest_invoice=stripe_obj(id="in_open", status="open")),
    )
    pay = mocker.patch("stripe.Invoice.pay", return_value=stripe_obj(id="in_open", status="paid"))

    result = await subscriptions.attach_subscription_payment_method(subscription.restaurant_id, "pm_1")

    assert result.id == subscription.id
    set_default.assert_called_once_with("cus_rest", invoice_settings={"default_payment_method": "pm_1"})
    assert modify.call_args.kwargs["default_payment_method"] == "pm_1"
    pay.assert_called_once_with("in_open", payment_method="pm_1")


async def test_declined_invoice_payment_does_not_fail_attach(mocker, subscription):
    mocker.patch("stripe.PaymentMethod.attach", return_value=stripe_obj(id="pm_1"))
    mocker.patch("stripe.Customer.modify", return_value=stripe_obj(id="cus_rest"))
    mocker.patch(
        "stripe.Subscription.modify",
        return_value=stripe_obj(id="sub_1", latest_invoice=stripe_obj(id="in_open", status="open")),
    )
    mocker.patch("stripe.Invoice.pay", side_effect=stripe.CardError("Your card was declined.", None, "card_declined"))

    result = await subscriptions.attach_subscription_payment_method(subscription.restaurant_id, "pm_1")

    assert result.id == subscription.id


async def test_attach_payment_method_requires_billing_customer(mocker, connected_restaurant):
    attach = mocker.patch("stripe.PaymentMethod.attach")

    with pytest.raises(InvalidStateError):
        await subscriptions.attach_subscription_payment_method(connected_restaurant.id, "pm_1")
    attach.assert_not_called()


async def test_list_subscriptions_newest_first(subscription, pro_plan):
    await RestaurantSubscription.filter(id=subscription.id).update(status=SubscriptionStatus.CANCELLED)
    newer = await RestaurantSubscription.create(
        restaurant_id=subscription.restaurant_id,
        plan=pro_plan,
        stripe_subscription_id="sub_2",
        start_date=datetime(2026, 1, 2, tzinfo=timezone.utc),
    )

    result = await subscriptions.list_subscriptions(subscription.restaurant_id)

    assert [s.id for s in result] == [newer.id, subscription.id]
    assert result[0].plan.name == "Pro"


# =========================
# WEBHOOK
# =========================
async def test_first_invoice_paid_activates(mocker, subscription):
    await RestaurantSubscription.filter(id=subscription.id).update(status=SubscriptionStatus.INCOMPLETE)
    retrieve = mocker.patch(
        "stripe.Subscription.retrieve",
        return_value={"id": "sub_1", "items": {"data": [{"id": "si_1", "current_period_end": PERIOD_END + 86400}]}},
    )

    outcome = await sync_subscription_event(invoice_event("evt_paid", "invoice.payment_succeeded", nested=True))

    assert outcome == WebhookOutcome.PROCESSED
    retrieve.assert_called_once_with("sub_1")
    stored = await RestaurantSubscription.get(id=subscription.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.end_date.date() == date(2026, 1, 2)
    assert await StripeEvent.filter(id="evt_paid").exists()


@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("invoice.payment_failed", SubscriptionStatus.EXPIRED),
        ("invoice.marked_uncollectible", SubscriptionStatus.EXPIRED),
        ("invoice.payment_action_required", SubscriptionStatus.INCOMPLETE),
    ],
)
async def test_invoice_events_set_status(mocker, subscription, event_type, expected):
    retrieve = mocker.patch("stripe.Subscription.retrieve")

    outcome = await sync_subscription_event(invoice_event("evt_inv", event_type))

    assert outcome == WebhookOutcome.PROCESSED
    retrieve.assert_not_called()
    assert (await RestaurantSubscription.get(id=subscription.id)).status == expected


@pytest.mark.parametrize(
    "stripe_status, expected",
    [
        ("past_due", SubscriptionStatus.EXPIRED),
        ("unpaid", SubscriptionStatus.CANCELLED),
        ("incomplete", SubscriptionStatus.INCOMPLETE),
        ("active", SubscriptionStatus.ACTIVE),
    ],
)
async def test_subscription_updated_maps_status(subscription, stripe_status, expected):
    await sync_subscription_event(subscription_event(
        "evt_upd", "customer.subscription.updated", status=stripe_status, period_end=PERIOD_END
    ))

    stored = await RestaurantSubscription.get(id=subscription.id)
    assert stored.status == expected
    assert stored.end_date.date() == date(2026, 1, 1)


async def test_subscription_deleted_cancels(subscription):
    outcome = await sync_subscription_event(subscription_event("evt_del", "customer.subscription.deleted", status="canceled"))

    assert outcome == WebhookOutcome.PROCESSED
    assert (await RestaurantSubscription.get(id=subscription.id)).status == SubscriptionStatus.CANCELLED


async def test_subscription_created_fills_missing_end_date(subscription):
    await RestaurantSubscription.filter(id=subscription.id).update(end_date=None)

    await sync_subscription_event(subscription_event("evt_new", "customer.subscription.created", status="incomplete"))

    stored = await RestaurantSubscription.get(id=subscription.id)
    assert stored.end_date.date() == date(2026, 1, 1)


async def test_cancelled_subscription_is_final(subscription):
    await RestaurantSubscription.filter(id=subscription.id).update(status=SubscriptionStatus.CANCELLED)

    outcome = await sync_subscription_event(invoice_event("evt_late", "invoice.payment_failed"))

    assert outcome == WebhookOutcome.NOOP
    assert (await RestaurantSubscription.get(id=subscription.id)).status == SubscriptionStatus.CANCELLED


async def test_duplicate_subscription_event(subscription):
    raw = invoice_event("evt_dup", "invoice.payment_failed")
    await sync_subscription_event(raw)
    await RestaurantSubscription.filter(id=subscription.id).update(status=SubscriptionStatus.ACTIVE)

    outcome = await sync_subscription_event(raw)

    assert outcome == WebhookOutcome.DUPLICATE
    assert (await RestaurantSubscription.get(id=subscription.id)).status == SubscriptionStatus.ACTIVE


async def test_unknown_subscription_is_recorded(subscription):
    outcome = await sync_subscription_event(invoice_event("evt_unknown", "invoice.payment_failed", "sub_other"))

    assert outcome == WebhookOutcome.UNRESOLVED
    assert await StripeEvent.filter(id="evt_unknown").exists()


async def test_unhandled_subscription_event_type(subscription):
    outcome = await sync_subscription_event({"id": "evt_created", "type": "invoice.created", "data": {"object": {}}})

    assert outcome == WebhookOutcome.IGNORED
    assert not await StripeEvent.filter(id="evt_created").exists()


async def test_period_lookup_failure_leaves_no_ledger_row(mocker, subscription):
    mocker.patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("network down"))

    with pytest.raises(ExternalServiceError):
        await sync_subscription_event(invoice_event("evt_retry", "invoice.payment_succeeded"))

    assert not await StripeEvent.filter(id="evt_retry").exists()


async def test_subscription_update_failure_rolls_back(mocker, subscription):
    mocker.patch.dict(
        webhooks.SUBSCRIPTION_EVENT_HANDLERS,
        {webhooks.InvoiceChanged: mocker.AsyncMock(side_effect=OperationalError("disk I/O error"))},
    )

    with pytest.raises(OperationalError):
        await sync_subscription_event(invoice_event("evt_boom", "invoice.payment_failed"))

    assert not await StripeEvent.filter(id="evt_boom").exists()
    assert (await RestaurantSubscription.get(id=subscription.id)).status == SubscriptionStatus.ACTIVE
