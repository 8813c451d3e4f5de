import uuid
from tortoise import fields, models


class StripeEvent(models.Model):
    """Ledger of processed Stripe webhook events; a row means "already handled"."""

    id = fields.CharField(pk=True, max_length=255)  # Stripe event id, evt_...
    type = fields.CharField(max_length=100)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "stripe_events"


class UserPaymentMethod(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    user = fields.ForeignKeyField("models.User", related_name="payment_methods")
    stripe_pm_id = fields.CharField(max_length=100, unique=True)
    brand = fields.CharField(max_length=30, null=True)
    last4 = fields.CharField(max_length=4, null=True)
    exp_month = fields.IntField(null=True)
    exp_year = fields.IntField(null=True)
    is_default = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "user_payment_methods"
