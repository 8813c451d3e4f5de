import uuid
from enum import Enum
from tortoise import fields, models


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    WALLET = "WALLET"
    ONLINE = "ONLINE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class Order(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    order_number = fields.CharField(max_length=30, unique=True)
    user = fields.ForeignKeyField("models.User", related_name="orders")
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="orders")

    subtotal = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    delivery_fee = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = fields.DecimalField(max_digits=12, decimal_places=2)

    payment_method = fields.CharEnumField(PaymentMethod, default=PaymentMethod.CASH)
    payment_status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.PENDING)
    status = fields.CharEnumField(OrderStatus, default=OrderStatus.PENDING)

    # At most one live intent per order; replaced only when the old one was canceled
    stripe_payment_intent_id = fields.CharField(max_length=100, null=True, unique=True)
    paid_at = fields.DatetimeField(null=True)
    refunded_amount = fields.IntField(default=0)  # minor units, last refund event seen

    special_instructions = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"

    def __str__(self):
        return f"Order {self.order_number}"
