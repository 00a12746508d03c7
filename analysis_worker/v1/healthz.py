from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings, SettingsDep
from analysis_worker.infra.database import SessionDep
from analysis_worker.v1.core.exceptions import create_success_response

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    request: Request,
    settings: Settings = SettingsDep,
    session: AsyncSession = SessionDep,
):
    """Health check with database status and, when running, worker component stats."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    worker_health: dict[str, Any] | None = None
    worker = getattr(request.app.state, "worker", None)
    if worker is not None:
        try:
            worker_health = await worker.health()
            if not worker_health["healthy"]:
                overall_ok = False
        except Exception as e:
            # Stats failures don't fail overall health
            logger.warning("Worker health check failed", error=str(e))
            worker_health = {"healthy": False, "error": str(e)}

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "worker": worker_health,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))
