from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.database import init_db, async_session_factory
from app.jobs.scheduler import start_scheduler, shutdown_scheduler, get_job_status
from app.services.payment_credentials_service import platform_credentials_configured

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables when DB_CREATE_TABLES_ON_STARTUP is set (Alembic otherwise)
    - Start background scheduler (monthly billing, reconciliation retry)
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if settings.DB_CREATE_TABLES_ON_STARTUP:
        await init_db()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Service Billing", "description": "Monthly platform service-charge invoices for landlords"},
    {"name": "Payment Webhooks", "description": "M-Pesa, Jenga and KCB payment notifications"},
    {"name": "M-Pesa", "description": "STK push initiation and live transaction status"},
    {"name": "Reconciliation", "description": "Matching inbound payments to tenant invoices"},
]

FULL_API_DESCRIPTION = """
## Rental Billing & Payment Reconciliation API

Billing and payment reconciliation for a multi-tenant property management platform.

### Modules

| Module | Description |
|--------|-------------|
| **Service Billing** | Percentage, fixed-per-unit and tiered plans, monthly batch run |
| **Payment Webhooks** | M-Pesa STK callbacks, Jenga IPN, KCB IPN |
| **M-Pesa** | STK push and Server-Sent Events transaction status |
| **Reconciliation** | Automatic matching, manual allocation, unmatched queue |

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Malformed payload or invalid amount |
| 401 | Unauthorized - Invalid webhook signature or cron secret |
| 403 | Forbidden - Callback source address not allowed |
| 404 | Not Found - Payment, invoice or transaction doesn't exist |
| 409 | Conflict - Allocation exceeds a balance or invoice settled |
| 502 | Bad Gateway - Payment provider unavailable |
| 503 | Service Unavailable - Payment credentials not configured |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=FULL_API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unhandled errors and return a JSON 500."""
    logger.error(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc}")

    error_detail = {
        "error": str(exc),
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    if settings.DEBUG:
        error_detail["traceback"] = traceback.format_exc()

    response = JSONResponse(
        status_code=500,
        content=error_detail
    )

    # Add CORS headers if origin is allowed
    origin = request.headers.get("origin", "")
    if origin in settings.cors_origins_list or "*" in settings.cors_origins_list:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"

    return response


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with database and payment-provider configuration."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown",
            "mpesa": "unknown",
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    if platform_credentials_configured():
        health_status["checks"]["mpesa"] = f"configured ({settings.MPESA_ENVIRONMENT})"
    else:
        health_status["checks"]["mpesa"] = "not configured"
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    if settings.SCHEDULER_ENABLED:
        health_status["checks"]["scheduler"] = get_job_status()

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
