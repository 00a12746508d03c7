"""
Operational job endpoints: stuck-job cleanup and status statistics.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from analysis_worker.config.logging import get_logger
from analysis_worker.v1.core.exceptions import create_success_response
from analysis_worker.v1.infra.jobs.reconciler import StuckJobReconciler
from analysis_worker.v1.infra.jobs.schemas import CleanupRequest, JobStatsResponse

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_reconciler(request: Request) -> StuckJobReconciler:
    """The running worker's reconciler, or the app's standalone one."""
    worker = getattr(request.app.state, "worker", None)
    if worker is not None:
        return worker.reconciler
    standalone = getattr(request.app.state, "standalone", None)
    if standalone is None:
        raise HTTPException(status_code=503, detail="Reconciler is not running")
    return standalone.reconciler


@router.post("/cleanup", response_model=dict)
async def cleanup_stuck_jobs(
    cleanup: CleanupRequest,
    reconciler: StuckJobReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Reconcile stuck jobs. With ``dry_run`` nothing is modified."""
    try:
        report = await reconciler.run_once(
            dry_run=cleanup.dry_run,
            processing_timeout_s=cleanup.processing_timeout_s,
            queued_timeout_s=cleanup.queued_timeout_s,
        )
    except Exception as e:
        logger.exception("Stuck job cleanup failed", error=str(e))
        raise HTTPException(status_code=500, detail="Stuck job cleanup failed")

    logger.info(
        "Stuck job cleanup via API",
        dry_run=report.dry_run,
        examined=report.examined,
        completed=report.completed,
        failed=report.failed,
    )
    return create_success_response(data=report.model_dump(mode="json"))


@router.get("/stats", response_model=dict)
async def job_stats(
    processing_timeout_s: float | None = None,
    reconciler: StuckJobReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Status breakdown with oldest/newest per status and the stuck-job summary."""
    stats = await reconciler.statistics(processing_timeout_s)
    return create_success_response(
        data=JobStatsResponse.model_validate(stats).model_dump(mode="json")
    )
