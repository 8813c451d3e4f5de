from tortoise import fields, models
from passlib.hash import bcrypt
from app.utils.generate_unique import generate_unique
from enum import Enum


class UserRole(str, Enum):
    USER = "USER"
    RESTAURANT = "RESTAURANT"
    ADMIN = "ADMIN"


class User(models.Model):
    id = fields.CharField(pk=True, max_length=60)
    name = fields.CharField(max_length=50, null=True, default="Unknown User")
    email = fields.CharField(max_length=100, unique=True)
    password = fields.CharField(max_length=128)
    phone = fields.CharField(max_length=255, null=True)

    role = fields.CharEnumField(UserRole, default=UserRole.USER)

    is_active = fields.BooleanField(default=True)
    last_login_at = fields.DatetimeField(null=True)

    # Stripe billing customer, created once per user
    stripe_customer_id = fields.CharField(max_length=100, null=True, unique=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    @classmethod
    def set_password(cls, password: str) -> str:
        return bcrypt.hash(password)

    def verify_password(self, password: str) -> bool:
        return bcrypt.verify(password, self.password)

    class Meta:
        table = "users"

    def __str__(self):
        return f"{self.name} ({self.email})"

    async def save(self, *args, **kwargs):
        if not self.id:
            text = "USR"
            if self.role == UserRole.ADMIN:
                text = "ADM"
            if self.role == UserRole.RESTAURANT:
                text = "RST"
            self.id = (await generate_unique(User, text=text, max_length=9)).upper()
        if self.password and not self.password.startswith("$2b$"):
            self.password = self.set_password(self.password)

        await super().save(*args, **kwargs)
