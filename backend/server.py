from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import auth, billing, webhooks, stores, orders
from services.billing_errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

# Import job runners from shared module (used by scheduler)
from job_runner import run_subscription_expiry_sweep

EXPIRY_SWEEP_INTERVAL_MINUTES = int(os.getenv("EXPIRY_SWEEP_INTERVAL_MINUTES", "60"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Skip MongoDB and scheduler under pytest; tests patch database.get_db
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    # Startup
    await database.connect()
    logger.info(
        "Ledger unit of work mode: %s",
        getattr(database.get_unit_of_work(), "mode", "unknown"),
    )

    # Seed plan catalogue
    try:
        from services.plan_catalogue import plan_catalogue
        await plan_catalogue.seed_default_plans()
    except Exception as e:
        logger.error(f"Failed to seed plan catalogue: {e}")

    # Subscription expiry sweep: past_due after expiry, expired after grace
    scheduler.add_job(
        run_subscription_expiry_sweep,
        IntervalTrigger(minutes=EXPIRY_SWEEP_INTERVAL_MINUTES),
        id="subscription_expiry_sweep",
        name="Subscription Expiry Sweep",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()


app = FastAPI(
    title="Storefront Billing Ledger API",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(stores.router)
app.include_router(stores.products_router)
app.include_router(orders.router)


@app.get("/api/health")
async def health():
    unit_of_work = database.get_unit_of_work()
    return {
        "status": "ok",
        "ledger_mode": getattr(unit_of_work, "mode", None),
        "environment": os.getenv("ENVIRONMENT", "development"),
    }


# Billing errors carry their own status and machine-readable code
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"Billing failure on {request.method} {request.url.path}: {exc.error_code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"detail": exc.to_detail()}),
    )


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
        content={"detail": [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in errors], "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
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
