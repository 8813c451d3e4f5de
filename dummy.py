import sys
import asyncio
import logging

from tortoise import connections

from app.config import init_db, settings
from app.dummy.registry import SEEDERS
from app.dummy.reset import reset_data

logger = logging.getLogger("dummy")


def confirm(msg: str) -> bool:
    answer = input(f"{msg} (yes/no): ").lower()
    return answer == "yes"


async def seed(apps: list[str], reset: bool):
    if settings.ENV == "production":
        logger.error("Seeding is BLOCKED in production!")
        return

    if not apps:
        logger.error(f"No app specified. Available: {', '.join(SEEDERS.keys())}")
        return

    await init_db()
    try:
        if reset:
            logger.warning("RESET ENABLED")
            await reset_data(apps)

        for app in apps:
            seeder = SEEDERS.get(app)
            if not seeder:
                logger.error(f"Unknown app: {app}")
                continue

            logger.info(f"Seeding {app}...")
            await seeder()
            logger.info(f"{app} seeded successfully")
    finally:
        await connections.close_all()


def main():
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    args = sys.argv[1:]

    if not args or args[0] != "seed":
        print("Usage:")
        print("  python dummy.py seed user")
        print("  python dummy.py seed user restaurant")
        print("  python dummy.py seed --all")
        print("  python dummy.py seed user --reset")
        return

    reset = "--reset" in args
    apps = [a for a in args[1:] if not a.startswith("--")]

    if "--all" in args:
        if not confirm("This will seed ALL data. Continue?"):
            print("Cancelled")
            return
        apps = list(SEEDERS.keys())

    asyncio.run(seed(apps, reset))


if __name__ == "__main__":
    main()
