"""
Health check endpoints

Liveness only: neither endpoint touches the FHIR server, Redis or any other
dependency.
"""

import time

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from smart_launch.core.logging import get_logger

router = APIRouter(tags=["health"])
logger = get_logger(__name__)

HEALTHCHECK_BODY = "OK"


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str
    version: str
    timestamp: float


@router.get("/healthcheck.html", response_class=PlainTextResponse)
async def healthcheck_page():
    """Constant 200 for load balancer liveness checks"""
    return PlainTextResponse(HEALTHCHECK_BODY)


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Basic health check endpoint
    Returns 200 if the service is running
    """
    logger.debug("health_check_requested")
    return HealthResponse(
        status="healthy",
        version=request.app.state.smart_service.settings.APP_VERSION,
        timestamp=time.time(),
    )
