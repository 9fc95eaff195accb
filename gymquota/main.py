import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from the working directory before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from gymquota.core.config import settings, validate_config
from gymquota.core.database import create_all_tables, get_database_url
from gymquota.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from gymquota.core.logging import configure_logging
from gymquota.core.middleware.request_id import RequestIdMiddleware
from gymquota.core.validation import validate_env
from gymquota.api import health, organizations, usage

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("gymquota")
    logger.info("Starting gymquota service...")
    # Counters and plan tiers both live in the database; no database, no service
    if not get_database_url():
        raise RuntimeError("DATABASE_URL is not configured; refusing to start")
    if settings.QUOTA_AUTO_CREATE_TABLES:
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping gymquota service...")


app = FastAPI(title="gymquota - plan quota service", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(organizations.router, tags=["organizations"])
app.include_router(usage.router, tags=["usage"])
