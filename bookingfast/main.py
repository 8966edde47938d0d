import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from bookingfast.core.config import settings, validate_config
from bookingfast.core.database import create_all_tables
from bookingfast.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from bookingfast.core.logging import configure_logging
from bookingfast.core.middleware.request_id import RequestIdMiddleware
from bookingfast.api import access, billing, health, plugins, team
from bookingfast.features.plugins.service import seed_plugins

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("bookingfast")
    logger.info("Starting BookingFast entitlements service...")
    create_all_tables()
    seed_plugins()
    try:
        yield
    finally:
        logger.info("Stopping BookingFast entitlements service...")


app = FastAPI(title="BookingFast - Entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(plugins.router)
app.include_router(access.router)
app.include_router(team.router)
app.include_router(billing.router)


def run() -> None:
    """Serve the API with uvicorn (`bookingfast-api`)."""
    import uvicorn

    uvicorn.run(
        "bookingfast.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
