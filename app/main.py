from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import app.models  # noqa: F401

from app.core.config import Settings, settings as default_settings
from app.core.container import build_services
from app.core.db import SessionLocal
from app.core.logging import configure_logger, intercept_standard_logging

# Routers
from app.routers.orders import router as orders_router
from app.routers.admin_tasks import router as admin_tasks_router


def create_app(settings: Settings = default_settings, services=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logger(settings)
        intercept_standard_logging()

        built = services or build_services(settings, SessionLocal, source="api")
        app.state.store = built.store
        app.state.registry = built.registry
        app.state.queue = built.queue
        app.state.orchestrator = built.orchestrator
        logger.info("{} api started with vendors {}", settings.APP_NAME, sorted(built.registry))

        yield

        close = getattr(built.store, "close", None)
        if close is not None:
            await close()

    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG, lifespan=lifespan)
    app.state.settings = settings

    # Orders
    app.include_router(orders_router)

    # Task management
    app.include_router(admin_tasks_router)

    return app


app = create_app()
