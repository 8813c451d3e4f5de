import uuid
from enum import Enum
from tortoise import fields, models

from app.errors import InternalError


class StripeAccountStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Restaurant(models.Model):
    id = fields.UUIDField(pk=True, default=uuid.uuid4)
    owner = fields.OneToOneField("models.User", related_name="restaurant")
    name = fields.CharField(max_length=150, null=True)
    location = fields.TextField(null=True)

    # Write-once: set by the connect account flow, never overwritten afterwards
    stripe_connect_account_id = fields.CharField(max_length=100, null=True, unique=True)
    stripe_account_status = fields.CharEnumField(StripeAccountStatus, default=StripeAccountStatus.NONE)
    commission_rate = fields.FloatField(null=True)  # 0-1, falls back to DEFAULT_COMMISSION_RATE
    bank_account_added = fields.BooleanField(default=False)
    # Billing customer for the restaurant's own plan subscription
    stripe_customer_id = fields.CharField(max_length=100, null=True, unique=True)

    is_active = fields.BooleanField(default=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "restaurants"

    def __str__(self):
        return f"{self.name} ({self.id})"

    async def save(self, *args, **kwargs):
        if self.commission_rate is not None and not 0 <= self.commission_rate <= 1:
            raise ValueError("commission_rate must be between 0 and 1")

        if self._saved_in_db:
            rows = await Restaurant.filter(pk=self.pk).values_list("stripe_connect_account_id", flat=True)
            stored = rows[0] if rows else None
            if stored and stored != self.stripe_connect_account_id:
                raise InternalError(
                    "Stripe account id is already set for this restaurant",
                    restaurant_id=str(self.pk),
                    stored_account_id=stored,
                    attempted_account_id=self.stripe_connect_account_id,
                )

        await super().save(*args, **kwargs)
