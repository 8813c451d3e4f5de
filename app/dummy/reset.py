import logging

from tortoise import Tortoise

logger = logging.getLogger(__name__)

# Child tables first so foreign keys never block a delete.
RESET_TABLES = {
    "user": ["user_payment_methods", "orders", "restaurant_subscriptions", "restaurants", "users"],
    "restaurant": ["orders", "restaurant_subscriptions", "restaurants"],
}


async def reset_data(apps: list[str]):
    conn = Tortoise.get_connection("default")

    for app in apps:
        tables = RESET_TABLES.get(app, [])
        for table in tables:
            logger.info(f"Truncating table: {table}")
            await conn.execute_script(f"DELETE FROM {table};")
