import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env before settings are read (tests configure the environment themselves)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from resumesaas import __version__
from resumesaas.api import admin_billing, billing, credits, documents, features, health
from resumesaas.core.config import settings, validate_config
from resumesaas.core.database import create_all_tables
from resumesaas.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from resumesaas.core.logging import configure_logging
from resumesaas.core.middleware.request_id import RequestIdMiddleware
from resumesaas.core.validation import validate_env
from resumesaas.features.ledger.store import referenced_plan_ids
from resumesaas.features.plans.catalog import get_catalog

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("resumesaas")
    logger.info("Starting resumesaas backend...")
    app.state.startup_time = time.time()

    create_all_tables()
    # Fail fast if the ledger references plans the catalog no longer defines
    get_catalog().validate_references(referenced_plan_ids())

    try:
        yield
    finally:
        logger.info("Stopping resumesaas backend...")


app = FastAPI(title="Resume SaaS - Backend", version=__version__, lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(features.router)
app.include_router(credits.router)
app.include_router(documents.router)
app.include_router(billing.router)
app.include_router(billing.webhook_router)
app.include_router(admin_billing.router)
