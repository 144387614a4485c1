import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project root .env
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from promptpro.core.config import settings, validate_config
from promptpro.core.database import check_connection, get_database_url
from promptpro.core.logging import configure_logging
from promptpro.core.middleware.request_id import RequestIdMiddleware
from promptpro.core.errors import AppError, register_error_handlers
from promptpro.api import billing, prompts, quota, tags, teams

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("promptpro")
    logger.info("Starting PromptPro core...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("promptpro").info("Stopping PromptPro core...")


app = FastAPI(title="PromptPro - Core API", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

register_error_handlers(app)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(teams.router)
app.include_router(tags.router)
app.include_router(quota.router)
app.include_router(prompts.router)
app.include_router(billing.router)


@app.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@app.get("/readyz")
def readyz():
    """Readiness: in-memory mode is always ready; otherwise the DB must answer."""
    if not get_database_url():
        return {"status": "ok", "store": "memory"}
    if not check_connection():
        raise AppError("Database unavailable", code="store_unavailable", status_code=503)
    return {"status": "ok", "store": "sql"}
