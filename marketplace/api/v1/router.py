"""
Main API router for the Marketplace Bookings Service.
Combines all API endpoints and provides health checks.
"""

from fastapi import APIRouter
import logging

from marketplace.api.dependencies import check_service_health
from marketplace.api.v1.admin import router as admin_router
from marketplace.api.v1.bookings import router as bookings_router
from marketplace.api.v1.notifications import router as notifications_router
from marketplace.api.v1.reviews import router as reviews_router
from marketplace.api.v1.rsvps import router as rsvps_router
from marketplace.schemas.common import HealthCheckResponse

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Create main router
router = APIRouter(prefix="/api/v1")

router.include_router(bookings_router)
router.include_router(rsvps_router)
router.include_router(reviews_router)
router.include_router(notifications_router)
router.include_router(admin_router)


@router.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """
    Health check endpoint.

    Returns:
        Database and Redis status; Redis being down does not make the service unhealthy
    """
    try:
        health_status = await check_service_health()
        return HealthCheckResponse(
            status=health_status["overall"],
            version=SERVICE_VERSION,
            database=health_status["database"],
            redis=health_status["redis"]
        )

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthCheckResponse(
            status="unhealthy",
            version=SERVICE_VERSION,
            database="unknown",
            redis="unknown"
        )
