import uuid
from enum import Enum
from tortoise import fields, models


class PlanInterval(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class SubscriptionPlan(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    name = fields.CharField(max_length=100)
    price = fields.DecimalField(max_digits=10, decimal_places=2)
    interval = fields.CharEnumField(PlanInterval, default=PlanInterval.MONTHLY)
    features = fields.JSONField(null=True)
    stripe_price_id = fields.CharField(max_length=100, null=True, unique=True)
    is_active = fields.BooleanField(default=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "subscription_plans"

    def __str__(self):
        return f"{self.name} ({self.interval.value})"


class RestaurantSubscription(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="subscriptions")
    plan = fields.ForeignKeyField("models.SubscriptionPlan", related_name="subscriptions")
    stripe_subscription_id = fields.CharField(max_length=100, null=True, unique=True)
    status = fields.CharEnumField(SubscriptionStatus, default=SubscriptionStatus.INCOMPLETE)
    start_date = fields.DatetimeField()
    end_date = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "restaurant_subscriptions"

    def __str__(self):
        return f"{self.restaurant_id} -> {self.plan_id} ({self.status.value})"
