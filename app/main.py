import sys

from fastapi import FastAPI
from loguru import logger
from tortoise.contrib.fastapi import register_tortoise

from app import settings
from app.exceptions import register_exception_handlers
from app.routers import booking, earnings

logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Marketplace Bookings",
        description="Booking lifecycle, payments and provider earnings",
        version="0.1.0",
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    app.include_router(booking.router)
    app.include_router(earnings.router)
    register_exception_handlers(app)

    register_tortoise(
        app,
        db_url=settings.db_url,
        modules={"models": ["app.models"]},
        generate_schemas=settings.db_url.startswith("sqlite"),
        add_exception_handlers=True,
    )
    return app


app = create_app()
