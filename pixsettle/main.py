import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load .env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from pixsettle.core.config import settings, validate_config
from pixsettle.core.logging import configure_logging
from pixsettle.core.middleware.request_id import RequestIdMiddleware
from pixsettle.core.middleware.metrics import MetricsMiddleware
from pixsettle.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from pixsettle.api import admin_payments, health, metrics, payments

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("pixsettle")
    logger.info("Starting pixsettle...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logger.info("Stopping pixsettle...")


app = FastAPI(title="pixsettle - payment settlement", lifespan=lifespan)

# Middlewares (last added runs first)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(payments.router)
app.include_router(admin_payments.router)
app.include_router(health.router)
app.include_router(health.root_router)
app.include_router(metrics.router)
