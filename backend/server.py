from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import billing, cards, entitlements, usage, webhooks

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
SERVICE_NAME = "Cards Entitlement API"


def _build_jobstores() -> dict:
    """Persist scheduled jobs in MongoDB (scheduled_jobs); memory store under pytest or on failure."""
    if os.environ.get("PYTEST_RUNNING"):
        return {}
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'weshare_cards')
    try:
        from pymongo import MongoClient
        store = MongoDBJobStore(database=db_name, collection='scheduled_jobs', client=MongoClient(mongo_url))
        logger.info(f"Job store: {db_name}.scheduled_jobs")
        return {'default': store}
    except Exception as e:
        logger.warning(f"MongoDB job store unavailable, jobs kept in memory: {e}")
        return {}


scheduler = AsyncIOScheduler(jobstores=_build_jobstores())

from job_runner import (
    run_checkout_session_expiry,
    run_entitlement_consistency_check,
)


def _log_stripe_config():
    """Log Stripe mode and the price id per tier. Never logs keys."""
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY not set: checkout and billing portal will fail")
    else:
        logger.info("STRIPE_MODE = %s", "test" if stripe_key.startswith("sk_test_") else "live")

    from services.tier_registry import tier_registry
    for tier in tier_registry.get_all_tiers():
        logger.info("Stripe price tier=%s price_id=%s", tier["id"], tier["stripe_price_id"] or "(none)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {SERVICE_NAME}")
    await database.connect()

    try:
        _log_stripe_config()
    except Exception as e:
        logger.warning("Stripe config check failed: %s", e)

    # Abandoned checkouts: hourly
    scheduler.add_job(
        run_checkout_session_expiry,
        IntervalTrigger(hours=1),
        id="checkout_session_expiry",
        name="Checkout Session Expiry",
        replace_existing=True
    )
    # Stored entitlement_status vs status mapping: daily 03:00 UTC
    scheduler.add_job(
        run_entitlement_consistency_check,
        CronTrigger(hour=3, minute=0),
        id="entitlement_consistency_check",
        name="Entitlement Consistency Check",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    scheduler.shutdown(wait=False)
    await database.close()


app = FastAPI(
    title=SERVICE_NAME,
    description="Tiers, lifetime licenses and usage limits for digital business cards",
    version=API_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(entitlements.router)
app.include_router(usage.router)
app.include_router(cards.router)


@app.get("/api")
async def root():
    return {"service": SERVICE_NAME, "version": API_VERSION, "status": "operational"}


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "environment": os.getenv("ENVIRONMENT", "development")}


# Build stamp; CI sets GIT_COMMIT_SHA
@app.get("/api/version")
async def version_info():
    return {
        "version": API_VERSION,
        "commit_sha": os.getenv("GIT_COMMIT_SHA", os.getenv("BUILD_SHA", "unknown")),
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(errors, custom_encoder={Exception: str}), "request_id": request_id},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
