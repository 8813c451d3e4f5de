"""
Pytest configuration and fixtures.
"""
import pytest
from httpx import ASGITransport, AsyncClient
from tortoise import Tortoise, connections

from applications.restaurant.models import StripeAccountStatus
from applications.user.models import UserRole
from tests.factories import make_restaurant, make_user

MODEL_MODULES = [
    "applications.user.models",
    "applications.restaurant.models",
    "applications.orders.models",
    "applications.payments.models",
    "applications.subscription.models",
]


@pytest.fixture(autouse=True)
async def db():
    """Fresh in-memory database for every test."""
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODEL_MODULES})
    await Tortoise.generate_schemas()
    yield
    await connections.close_all()


@pytest.fixture
async def client():
    from app.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def customer():
    return await make_user(UserRole.USER, stripe_customer_id="cus_test_123")


@pytest.fixture
async def restaurant_owner():
    return await make_user(UserRole.RESTAURANT)


@pytest.fixture
async def admin():
    return await make_user(UserRole.ADMIN)


@pytest.fixture
async def restaurant(restaurant_owner):
    return await make_restaurant(restaurant_owner)


@pytest.fixture
async def connected_restaurant():
    return await make_restaurant(
        stripe_connect_account_id="acct_connected_1",
        stripe_account_status=StripeAccountStatus.COMPLETED,
        commission_rate=0.15,
    )
