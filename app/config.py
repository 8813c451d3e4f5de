from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings
from tortoise import Tortoise
from app.utils.auto_routing import get_single_app_structure


class Settings(BaseSettings):
    DEBUG: bool = True
    APP_NAME: str = "Mall Food Delivery API"
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    DB_HOST: str = "localhost"
    DB_NAME: str = "db.sqlite3"
    DB_USER: str = ""
    DB_PASSWORD: str = ""
    DB_PORT: int = 5432
    DB_ENGINE: str = "postgres"

    DATABASE_URL: Optional[str] = None
    SECRET_KEY: str = "change-me-access-secret"
    REFRESH_SECRET_KEY: str = "change-me-refresh-secret"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 10
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_ACCOUNT_WEBHOOK_SECRET: str = ""
    # Falls back to STRIPE_WEBHOOK_SECRET when unset
    STRIPE_SUBSCRIPTION_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"
    STRIPE_DEFAULT_COUNTRY: str = "US"
    STRIPE_ACCOUNT_TYPE: str = "express"
    DEFAULT_COMMISSION_RATE: float = 0.10

    FRONTEND_URL: str = "http://localhost:3000"
    STRIPE_REFRESH_PATH: str = "/restaurants/stripe/refresh"
    STRIPE_RETURN_PATH: str = "/restaurants/stripe/return"

    # False: a failed ledger pre-check rejects the webhook so Stripe retries.
    WEBHOOK_IDEMPOTENCY_FAIL_OPEN: bool = True

    @field_validator("DEFAULT_COMMISSION_RATE")
    @classmethod
    def check_commission_rate(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("DEFAULT_COMMISSION_RATE must be between 0 and 1")
        return value

    @field_validator("STRIPE_ACCOUNT_TYPE")
    @classmethod
    def check_account_type(cls, value: str) -> str:
        if value not in ("express", "standard", "custom"):
            raise ValueError("STRIPE_ACCOUNT_TYPE must be express, standard or custom")
        return value

    def model_post_init(self, __context):
        if self.DATABASE_URL:
            return
        if self.DB_ENGINE == "sqlite":
            self.DATABASE_URL = f"sqlite://{self.DB_NAME}"
        else:
            self.DATABASE_URL = (
                f"{self.DB_ENGINE}://{self.DB_USER}:{self.DB_PASSWORD}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()


TORTOISE_ORM = {
    "connections": {
        "default": settings.DATABASE_URL,
    },
    "apps": get_single_app_structure("applications"),
    "use_tz": True,
    "timezone": "UTC",
}


async def init_db():
    await Tortoise.init(config=TORTOISE_ORM)
    if settings.ENV != "production":
        await Tortoise.generate_schemas()
