"""
FastAPI status surface for the keeper.
Read-only: health and cycle telemetry of the running driver.
"""

from typing import Optional

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from miko_keeper.core.database import Database
from miko_keeper.scheduler.keeper_scheduler import KeeperCycleDriver
from .schemas import HealthCheckResponse, KeeperStatusResponse


logger = structlog.get_logger(__name__)


def create_app(driver: KeeperCycleDriver, database: Optional[Database] = None) -> FastAPI:
    """Create the status API bound to a cycle driver."""

    app = FastAPI(
        title="MIKO Keeper",
        description="Status and telemetry of the MIKO fee keeper.",
        version=driver.settings.app_version,
    )

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
    )
    async def health_check():
        health = driver.health()
        if database is None:
            return HealthCheckResponse(**health)

        if not await database.health_check():
            logger.error("Health check failed", database="unhealthy")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "running": health["running"],
                    "database": "unhealthy",
                },
            )
        return HealthCheckResponse(database="healthy", **health)

    @app.get(
        "/status",
        response_model=KeeperStatusResponse,
        tags=["Keeper"],
        summary="Keeper Status",
    )
    async def keeper_status():
        try:
            return await driver.get_status()
        except Exception as e:
            logger.error("Failed to build status", error=str(e))
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"status": "error", "error": str(e)},
            )

    return app
