import uuid
from decimal import Decimal

import pytest

from app.errors import InvalidStateError, NotFoundError, UnauthorizedError
from applications.orders.models import Order, PaymentMethod, PaymentStatus
from applications.payments.schemas import RefundType
from applications.payments.services.refunds import refund_order
from applications.user.models import UserRole
from tests.factories import make_order, make_user, stripe_obj


@pytest.fixture
async def paid_card_order(customer, restaurant):
    return await make_order(
        customer,
        restaurant,
        payment_status=PaymentStatus.PAID,
        stripe_payment_intent_id="pi_paid",
    )


@pytest.fixture
async def paid_cash_order(customer, restaurant):
    return await make_order(
        customer,
        restaurant,
        payment_method=PaymentMethod.CASH,
        payment_status=PaymentStatus.PAID,
        total=Decimal("22.50"),
    )


def mock_gateway(mocker, amount=10000, latest_charge="ch_1"):
    mocker.patch(
        "stripe.PaymentIntent.retrieve",
        return_value=stripe_obj(id="pi_paid", latest_charge=latest_charge, status="succeeded"),
    )
    return mocker.patch(
        "stripe.Refund.create",
        return_value=stripe_obj(id="re_1", amount=amount, status="pending"),
    )


async def test_full_gateway_refund_by_customer(mocker, customer, paid_card_order):
    create = mock_gateway(mocker)

    record = await refund_order(paid_card_order.id, None, customer.id, customer.role)

    assert record.id == "re_1"
    assert record.amount == 10000
    assert record.status == "pending"
    assert record.type == RefundType.GATEWAY
    assert record.order_id == paid_card_order.id

    kwargs = create.call_args.kwargs
    assert kwargs["payment_intent"] == "pi_paid"
    assert "amount" not in kwargs
    assert kwargs["metadata"] == {"order_id": str(paid_card_order.id), "refunded_by": customer.id}
    assert kwargs["idempotency_key"].startswith(f"refund_{paid_card_order.id}_")


async def test_gateway_refund_leaves_order_for_webhook(mocker, customer, paid_card_order):
    mock_gateway(mocker, amount=2500)

    await refund_order(paid_card_order.id, 2500, customer.id, customer.role)

    stored = await Order.get(id=paid_card_order.id)
    assert stored.payment_status == PaymentStatus.PAID
    assert stored.refunded_amount == 0


async def test_partial_gateway_refund_by_restaurant_owner(mocker, restaurant_owner, paid_card_order):
    create = mock_gateway(mocker, amount=2500)

    record = await refund_order(paid_card_order.id, 2500, restaurant_owner.id, restaurant_owner.role)

    assert record.amount == 2500
    assert create.call_args.kwargs["amount"] == 2500


async def test_admin_can_refund_any_order(mocker, admin, paid_card_order):
    mock_gateway(mocker)

    record = await refund_order(paid_card_order.id, None, admin.id, admin.role)

    assert record.type == RefundType.GATEWAY


async def test_stranger_cannot_refund(mocker, paid_card_order):
    create = mock_gateway(mocker)
    stranger = await make_user(UserRole.USER)

    with pytest.raises(UnauthorizedError):
        await refund_order(paid_card_order.id, None, stranger.id, stranger.role)
    create.assert_not_called()


async def test_other_restaurant_cannot_refund(mocker, paid_card_order):
    create = mock_gateway(mocker)
    other_owner = await make_user(UserRole.RESTAURANT)

    with pytest.raises(UnauthorizedError):
        await refund_order(paid_card_order.id, None, other_owner.id, other_owner.role)
    create.assert_not_called()


async def test_refund_over_total_rejected(mocker, customer, paid_card_order):
    create = mock_gateway(mocker)

    with pytest.raises(InvalidStateError):
        await refund_order(paid_card_order.id, 10001, customer.id, customer.role)
    create.assert_not_called()


async def test_refund_requires_positive_amount(mocker, customer, paid_card_order):
    create = mock_gateway(mocker)

    with pytest.raises(InvalidStateError):
        await refund_order(paid_card_order.id, 0, customer.id, customer.role)
    create.assert_not_called()


async def test_unpaid_order_not_refundable(mocker, customer, restaurant):
    order = await make_order(customer, restaurant, stripe_payment_intent_id="pi_pending")
    create = mock_gateway(mocker)

    with pytest.raises(InvalidStateError):
        await refund_order(order.id, None, customer.id, customer.role)
    create.assert_not_called()


async def test_order_without_intent_not_refundable(mocker, customer, restaurant):
    order = await make_order(customer, restaurant, payment_status=PaymentStatus.PAID)
    create = mock_gateway(mocker)

    with pytest.raises(InvalidStateError):
        await refund_order(order.id, None, customer.id, customer.role)
    create.assert_not_called()


async def test_intent_without_charge_not_refundable(mocker, customer, paid_card_order):
    create = mock_gateway(mocker, latest_charge=None)

    with pytest.raises(InvalidStateError):
        await refund_order(paid_card_order.id, None, customer.id, customer.role)
    create.assert_not_called()


async def test_unknown_order(mocker, customer):
    create = mock_gateway(mocker)

    with pytest.raises(NotFoundError):
        await refund_order(uuid.uuid4(), None, customer.id, customer.role)
    create.assert_not_called()


async def test_cash_refund_by_restaurant_owner(mocker, restaurant_owner, paid_cash_order):
    create = mocker.patch("stripe.Refund.create")

    record = await refund_order(paid_cash_order.id, None, restaurant_owner.id, restaurant_owner.role)

    assert record.type == RefundType.CASH
    assert record.amount == 2250
    assert record.status == "succeeded"
    assert record.id.startswith(f"cod_refund_{paid_cash_order.id}_")
    assert record.note
    create.assert_not_called()

    stored = await Order.get(id=paid_cash_order.id)
    assert stored.payment_status == PaymentStatus.REFUNDED
    assert stored.refunded_amount == 2250


async def test_partial_cash_refund_by_admin(admin, paid_cash_order):
    record = await refund_order(paid_cash_order.id, 1000, admin.id, admin.role)

    assert record.amount == 1000
    stored = await Order.get(id=paid_cash_order.id)
    assert stored.payment_status == PaymentStatus.REFUNDED
    assert stored.refunded_amount == 1000


async def test_customer_cannot_refund_cash_order(customer, paid_cash_order):
    with pytest.raises(UnauthorizedError):
        await refund_order(paid_cash_order.id, None, customer.id, customer.role)

    stored = await Order.get(id=paid_cash_order.id)
    assert stored.payment_status == PaymentStatus.PAID


async def test_unpaid_cash_order_not_refundable(admin, customer, restaurant):
    order = await make_order(customer, restaurant, payment_method=PaymentMethod.CASH)

    with pytest.raises(InvalidStateError):
        await refund_order(order.id, None, admin.id, admin.role)


async def test_cash_refund_over_total_rejected(admin, paid_cash_order):
    with pytest.raises(InvalidStateError):
        await refund_order(paid_cash_order.id, 2251, admin.id, admin.role)
