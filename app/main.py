import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from tortoise import connections

from app.config import settings, init_db
from app.errors import register_exception_handlers
from app.routes import register_routes
from app.utils.auto_routing import get_module
from app.dummy.registry import SEEDERS

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    if settings.DEBUG:
        for seeder in SEEDERS.values():
            await seeder()
    logger.info(f"{settings.APP_NAME} started ({settings.ENV})")
    yield
    await connections.close_all()
    logger.info("Application shutdown complete.")


app = FastAPI(lifespan=lifespan, debug=settings.DEBUG, title=settings.APP_NAME)
register_exception_handlers(app)
register_routes(app)


@app.get("/")
async def home():
    routes = get_module()
    routes.sort()
    return {"app": settings.APP_NAME, "env": settings.ENV, "routes": [f"/{r}" for r in routes]}


allow_origins = ["*"]
if settings.DEBUG:
    allow_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
        settings.FRONTEND_URL,
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Stripe-Signature"],
)
