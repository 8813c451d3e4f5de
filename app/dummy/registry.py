from app.dummy.user import seed_users
from app.dummy.restaurant import seed_restaurants

# Order matters: restaurants and orders need seeded users.
SEEDERS = {
    "user": seed_users,
    "restaurant": seed_restaurants,
}
