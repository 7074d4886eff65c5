"""
FastAPI application entry point.

This module sets up the FastAPI application with all middleware,
routers, and configuration for production use.
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routers import engagement
from core.config import settings
from core.database import check_db_connection
from core.logging import setup_logging
import logging
import redis
import time

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Coach Engagement API",
    description="Client activity monitoring, engagement triggers, coach recommendations and notification dispatch",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)


# CORS middleware
# Production: set CORS_ORIGINS env var (comma-separated)
# Development: DEBUG=True allows all origins
if settings.DEBUG:
    allowed_origins = ["*"]
elif settings.CORS_ORIGINS:
    # Production - use configured origins
    allowed_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
else:
    # Fallback for local development
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with timing information."""
    start_time = time.time()

    # Log request
    logger.info(
        f"Request: {request.method} {request.url.path}",
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            }
        }
    )

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        # Log response
        logger.info(
            f"Response: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "process_time_ms": round(process_time * 1000, 2),
                }
            }
        )

        # Add timing header
        response.headers["X-Process-Time"] = str(process_time)
        return response
    except Exception as e:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            exc_info=True,
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                }
            }
        )
        raise


# Error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
            }
        }
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
async def health():
    """
    Simple health check for load balancers and uptime monitors.

    Returns:
        - 200: Core systems operational
        - 503: Database unavailable
    """
    db_healthy = check_db_connection()

    if not db_healthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database": "unavailable",
            }
        )

    return {
        "status": "healthy",
        "timestamp": time.time(),
    }


@app.get("/health/detailed")
async def health_detailed():
    """
    Detailed health check for monitoring dashboards.

    Checks the database and the Celery broker, and reports which
    notification gateways are configured. Always returns 200.
    """
    checks = {
        "database": {"status": "unknown", "latency_ms": None},
        "broker": {"status": "unknown", "latency_ms": None},
    }

    # Check database
    start = time.time()
    try:
        db_healthy = check_db_connection()
        checks["database"]["status"] = "healthy" if db_healthy else "unhealthy"
        checks["database"]["latency_ms"] = round((time.time() - start) * 1000, 2)
    except Exception as e:
        checks["database"]["status"] = "error"
        checks["database"]["error"] = str(e)

    # Check the broker that carries scheduled-recommendation releases
    start = time.time()
    try:
        client = redis.Redis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=2)
        client.ping()
        checks["broker"]["status"] = "healthy"
        checks["broker"]["latency_ms"] = round((time.time() - start) * 1000, 2)
    except redis.RedisError as e:
        checks["broker"]["status"] = "error"
        checks["broker"]["error"] = str(e)

    all_healthy = all(c["status"] == "healthy" for c in checks.values())
    any_error = any(c["status"] == "error" for c in checks.values())

    return {
        "status": "healthy" if all_healthy else ("degraded" if not any_error else "unhealthy"),
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "timestamp": time.time(),
        "checks": checks,
        "channels": {
            "inApp": True,
            "sms": bool(settings.SMS_GATEWAY_URL),
            "webPush": bool(settings.WEB_PUSH_GATEWAY_URL),
        },
    }


@app.get("/ping")
async def ping():
    """
    Minimal ping endpoint for uptime monitors.
    No dependencies checked - just confirms the API is responding.
    """
    return {"pong": True}


# Include routers
app.include_router(engagement.router)
