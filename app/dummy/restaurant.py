import logging
from decimal import Decimal

from tortoise.transactions import in_transaction

from applications.orders.models import Order, PaymentMethod
from applications.restaurant.models import Restaurant
from applications.user.models import User, UserRole

logger = logging.getLogger(__name__)

RESTAURANT = {
    "name": "Food Court Grill",
    "location": "Level 2, Central Mall",
    "commission_rate": 0.15,
}

ORDERS = [
    {"order_number": "ORD-DEMO-0001", "subtotal": Decimal("95.00"), "delivery_fee": Decimal("5.00"),
     "total": Decimal("100.00"), "payment_method": PaymentMethod.CARD},
    {"order_number": "ORD-DEMO-0002", "subtotal": Decimal("20.00"), "delivery_fee": Decimal("2.50"),
     "total": Decimal("22.50"), "payment_method": PaymentMethod.CASH},
]


async def seed_restaurants():
    owner = await User.filter(role=UserRole.RESTAURANT).order_by("created_at").first()
    customer = await User.filter(role=UserRole.USER).order_by("created_at").first()
    if not owner or not customer:
        logger.warning("Seed users first: a restaurant owner and a customer are required")
        return

    async with in_transaction():
        restaurant, created = await Restaurant.get_or_create(owner=owner, defaults=RESTAURANT)
        logger.info(f"{'Created' if created else 'Found'} restaurant: {restaurant.name}")

        for order_data in ORDERS:
            data = dict(order_data)
            order, created = await Order.get_or_create(
                order_number=data.pop("order_number"),
                defaults={**data, "user": customer, "restaurant": restaurant},
            )
            if created:
                logger.info(f"Created order: {order.order_number} ({order.total})")
