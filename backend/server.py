from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import uuid
from contextlib import asynccontextmanager
from database import database

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

from entitlements import __version__
from entitlements.errors import EntitlementError
from entitlements.routes import admin, credits, payment, settings, timer, webhooks
from entitlements.services.credit_ledger import credit_ledger
from entitlements.services.subscription_state import ordering_from_env

scheduler = AsyncIOScheduler()


async def run_credit_reset():
    """Hourly pass replenishing credits whose reset date has passed."""
    try:
        result = await credit_ledger.reset_due_credits()
        logger.info(f"Credit reset job completed: {result}")
    except Exception as e:
        logger.error(f"Credit reset job failed: {e}")


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Entitlement Engine API")
    await database.connect()

    if not os.getenv("PAYPAL_WEBHOOK_ID"):
        logger.warning("PAYPAL_WEBHOOK_ID is not set. Webhook signatures will not be verified.")
    logger.info("WEBHOOK_ORDERING = %s", ordering_from_env().name)

    scheduler_enabled = not os.getenv("PYTEST_RUNNING")
    if scheduler_enabled:
        scheduler.add_job(
            run_credit_reset,
            IntervalTrigger(hours=1),
            id="credit_reset",
            name="Credit Replenishment",
            replace_existing=True
        )
        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Entitlement Engine API")
    if scheduler_enabled:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Entitlement Engine API",
    description="Subscriptions, credits and billing reconciliation",
    version=__version__,
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(payment.router)
app.include_router(admin.router)
app.include_router(settings.router)
app.include_router(settings.public_router)
app.include_router(timer.router)
app.include_router(credits.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Entitlement Engine",
        "version": __version__,
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.exception_handler(EntitlementError)
async def entitlement_exception_handler(request: Request, exc: EntitlementError):
    if exc.status_code >= 500:
        logger.error("%s path=%s error=%s", exc.error_code, request.url.path, exc.message)
    else:
        logger.info("%s path=%s error=%s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


# Malformed request bodies are reported like any other validation failure
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "success": False,
            "error": "Invalid request",
            "error_code": "VALIDATION_ERROR",
            "detail": errors,
            "request_id": request_id,
        }),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
