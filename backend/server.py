from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import auth, businesses, subscription_plans, subscriptions, onboarding
from services.billing_errors import BillingError
from utils.http_errors import billing_http_error
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Business Onboarding API")
    if os.environ.get("PYTEST_RUNNING"):
        logger.info("PYTEST_RUNNING set; skipping database connection")
        yield
        return

    await database.connect()

    # Stripe config: log mode (test/live) from key prefix (no secret keys)
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Paid subscriptions will fail.")
    else:
        stripe_mode = "test" if stripe_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
        if stripe_mode == "test" and os.environ.get("ENVIRONMENT") == "production":
            logger.warning("Stripe key looks like a test key but ENVIRONMENT=production. Verify key.")

    # Idempotent plan catalog seed
    try:
        from services.plan_catalog import plan_catalog
        await plan_catalog.seed_default_plans()
    except Exception as e:
        logger.error(f"Failed to seed subscription plans: {e}")

    yield

    # Shutdown
    logger.info("Shutting down Business Onboarding API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Business Onboarding API",
    description="Business onboarding and subscription provisioning",
    version="1.0.0",
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
app.include_router(auth.router)
app.include_router(businesses.router)
app.include_router(subscription_plans.router)
app.include_router(subscriptions.router)
app.include_router(onboarding.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Business Onboarding API",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: request_id + full errors (loc path)
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
        content={"detail": errors, "request_id": request_id},
    )

# Billing errors that escaped a route's own translation
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    http_exc = billing_http_error(exc)
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

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
