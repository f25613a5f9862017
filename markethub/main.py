import logging
import os

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from markethub/.env (tests configure the environment themselves)
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from markethub.core.config import settings, validate_config
from markethub.core.database import create_all_tables, dispose_engine
from markethub.core.logging import configure_logging
from markethub.core.middleware.request_id import RequestIdMiddleware
from markethub.core.validation import validate_env
from markethub.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from markethub.core.tracing import setup_tracing
from markethub.api import billing, generate, health, usage

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))
setup_tracing(enabled=settings.OTEL_ENABLED)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("markethub")
    logger.info("Starting MarketHub backend...")
    # Idempotent: existing tables are left alone
    create_all_tables()
    try:
        yield
    finally:
        dispose_engine()
        logger.info("Stopping MarketHub backend...")


app = FastAPI(title="MarketHub - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ALLOWED_ORIGINS.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(usage.router)
app.include_router(generate.router)
app.include_router(billing.router, prefix="/api")
app.include_router(health.root_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("markethub.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
