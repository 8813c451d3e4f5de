import logging

from tortoise.transactions import in_transaction
from tortoise.exceptions import IntegrityError

from applications.user.models import User, UserRole

logger = logging.getLogger(__name__)

# ==================================================
# USERS
# ==================================================

USERS = [
    {
        "email": "admin@gmail.com",
        "name": "Admin User",
        "password": "admin",
        "role": UserRole.ADMIN,
    },
    {
        "email": "restaurant@gmail.com",
        "name": "Restaurant Owner",
        "password": "restaurant",
        "role": UserRole.RESTAURANT,
    },
    {
        "email": "user@gmail.com",
        "name": "Regular User",
        "password": "user",
        "role": UserRole.USER,
    },
]


# ==================================================
# MAIN SEED FUNCTION
# ==================================================
async def seed_users():
    try:
        async with in_transaction():
            for user_data in USERS:
                data = dict(user_data)
                password = data.pop("password")

                user = await User.get_or_none(email=data["email"])
                if user:
                    logger.debug(f"User exists: {user.email}")
                    continue

                user = User(**data)
                user.password = User.set_password(password)
                await user.save()
                logger.info(f"Created user: {user.email}")
    except IntegrityError as e:
        logger.error(f"User seeding failed: {e}")
