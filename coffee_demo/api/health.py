from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends

from coffee_demo.errors import StoreConnectionError
from coffee_demo.models.schemas import HealthResponse
from coffee_demo.services.container import AppServices, get_services

router = APIRouter(tags=["health"])
logger = structlog.get_logger("health")


@router.get("/health", response_model=HealthResponse)
def health(services: AppServices = Depends(get_services)) -> HealthResponse:
    database_status = "healthy"
    try:
        if services.database is None:
            raise StoreConnectionError("Database is not initialized")
        services.database.ping()
    except StoreConnectionError as exc:
        database_status = "unhealthy"
        logger.error("database_health_check_failed", error=exc.message)

    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        database=database_status,
        region=services.settings.region,
    )
