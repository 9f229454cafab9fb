"""
Main FastAPI application for the Marketplace Bookings Service.
Handles application startup, middleware, error rendering and routing.
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace.core.exceptions import MarketplaceError
from marketplace.db.database import db_manager
from marketplace.db.redis_client import redis_manager
from marketplace.api.v1.router import router as api_router, SERVICE_VERSION

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting Marketplace Bookings Service...")

    try:
        await db_manager.initialize()
        logger.info("Database manager initialized")

        try:
            db_manager.create_tables()
        except Exception as e:
            logger.warning(f"Database tables may already exist: {e}")

    except Exception as e:
        logger.error(f"Failed to start Marketplace Bookings Service: {e}")
        raise

    # Redis only backs caching, realtime push and distributed locks
    try:
        await redis_manager.initialize()
        logger.info("Redis manager initialized")
    except Exception as e:
        logger.warning(f"Redis unavailable, continuing without cache and realtime push: {e}")

    logger.info("Marketplace Bookings Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Marketplace Bookings Service...")

    try:
        await db_manager.close()
        await redis_manager.close()
        logger.info("Marketplace Bookings Service shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


def _error_response(status_code: int, error_code: str, message, details=None) -> JSONResponse:
    content = {
        "error_code": error_code,
        "error_message": message,
        "timestamp": datetime.now().isoformat()
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


# Create FastAPI application
app = FastAPI(
    title="Marketplace Bookings Service",
    description="Vendor bookings, RSVPs and reviews for Evently",
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8080"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add request processing time to response headers."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(MarketplaceError)
async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
    """Render domain errors raised by the service layer."""
    logger.warning(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return _error_response(exc.status_code, exc.error_code, exc.message, exc.details)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """HTTP exception handler for FastAPI HTTP exceptions."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
    response = _error_response(exc.status_code, "HTTP_ERROR", exc.detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(422, "VALIDATION_ERROR", "Request validation failed", {"errors": exc.errors()})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(500, "INTERNAL_SERVER_ERROR", "An internal server error occurred")


# Include API router
app.include_router(api_router)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "service": "Marketplace Bookings Service",
        "version": SERVICE_VERSION,
        "status": "running",
        "endpoints": {
            "api": "/api/v1",
            "health": "/api/v1/health",
            "docs": "/docs",
            "redoc": "/redoc"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "marketplace.main:app",
        host="0.0.0.0",
        port=8002,
        reload=True,
        log_level="info"
    )
