import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from paygate.core.config import settings, validate_config
from paygate.core.database import create_all_tables
from paygate.core.logging import configure_logging
from paygate.core.middleware.request_id import RequestIdMiddleware
from paygate.core.middleware.metrics import MetricsMiddleware
from paygate.core.validation import validate_env
from paygate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from paygate.api import admin, entitlements, gate, health, metrics
from paygate.features.engine import build_engine
from paygate.features.reconciler.service import PeriodicRunner

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("paygate")
    logger.info("Starting paygate...")
    create_all_tables()

    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        app.state.engine = build_engine()

    runner = None
    if settings.RECONCILER_IN_PROCESS:
        runner = PeriodicRunner(app.state.engine.reconciler.tick, settings.PAYMENT_CHECK_INTERVAL_SECONDS, name="reconciler")
        runner.start()
    try:
        yield
    finally:
        if runner is not None:
            runner.stop(timeout=5)
        if owns_engine:
            app.state.engine.close()
            app.state.engine = None
        logger.info("Stopping paygate...")


app = FastAPI(title="paygate", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router, tags=["health"])
app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
app.include_router(gate.router, tags=["gate"])
app.include_router(entitlements.router, tags=["entitlements"])
app.include_router(admin.router, tags=["admin"])
