from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
import time
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from .api.v1.appointments import router as appointments_router
from .api.v1.intake import router as intake_router
from .api.v1.payments import router as payments_router
from .core.config import settings
from .core.database import get_db, get_redis, init_db
from .core.errors import BookingError
from .services.payment import get_payment_gateway

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Appointment booking and lifecycle engine for clinics",
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Middleware setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Only add TrustedHostMiddleware in production, not in testing
if not settings.TESTING:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"]
    )

# Custom middleware for request logging and timing
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    # Log request
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.4f}s"
    )

    return response

# Exception handlers
@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    # The structured payload is the body, without a "detail" wrapper
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.payload,
        headers=getattr(exc, "headers", None)
    )

@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    # Status handlers take precedence over class handlers
    if isinstance(exc, BookingError):
        return await booking_error_handler(request, exc)
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": "The requested resource was not found",
            "path": str(request.url.path)
        }
    )

@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"Internal server error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred"
        }
    )

# Include routers
app.include_router(appointments_router, prefix="/api/v1")
app.include_router(payments_router, prefix="/api/v1")
app.include_router(intake_router, prefix="/api/v1")

# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    logger.info("Starting Clinic Booking Engine...")

    # Check database connection
    db_url = settings.get_database_url
    db_type = "PostgreSQL" if "postgresql" in db_url else "SQLite" if "sqlite" in db_url else "Unknown"
    logger.info(f"Using {db_type} database")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    logger.info(f"Clinic timezone: {settings.CLINIC_TIMEZONE}")
    logger.info("Application startup complete")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown."""
    logger.info("Shutting down Clinic Booking Engine...")

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.VERSION
    }

# Readiness: database and redis reachable
@app.get("/readyz", include_in_schema=False)
async def readyz(db: Session = Depends(get_db), redis_client = Depends(get_redis)):
    db.execute(text("SELECT 1"))
    redis_client.get("readyz")
    return {"db": "ok", "redis": "ok"}

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Welcome to the Clinic Booking Engine API",
        "version": settings.VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health"
    }

# API Info endpoint
@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.VERSION,
        "endpoints": {
            "appointments": "/api/v1/appointments",
            "payments": "/api/v1/payment",
            "intake": "/api/v1/patient/intake-form",
            "docs": "/docs",
            "openapi": "/api/v1/openapi.json"
        },
        "payment_gateway_configured": get_payment_gateway().is_configured
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinicbook.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
