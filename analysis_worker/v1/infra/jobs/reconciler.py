"""
Stuck job reconciler.

Finds jobs left in ``processing`` or ``queued`` far longer than any run could
take and settles them against ground truth: a completed result for the same
user created shortly after the job means the job actually finished;
otherwise it is failed and the user refunded.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.database import Database, get_database
from analysis_worker.infra.state_store import StateStore, create_state_store
from analysis_worker.v1.infra.jobs.models import AnalysisJob, JobStatus, as_utc
from analysis_worker.v1.infra.jobs.schemas import (
    CleanupReport,
    ReconcileAction,
    ReconcileOutcome,
)
from analysis_worker.v1.infra.jobs.store import JobStatusStore
from analysis_worker.v1.infra.refunds import HttpRefundGateway, RefundGateway, RefundService

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StuckJobReconciler:
    def __init__(
        self,
        store: JobStatusStore,
        settings: Settings,
        refunds: RefundService | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.refunds = refunds
        self.interval_s = settings.reconciler_interval_s
        self.processing_timeout_s = settings.reconciler_processing_timeout_s
        self.queued_timeout_s = settings.reconciler_queued_timeout_s
        self.correlation_window = timedelta(seconds=settings.result_correlation_window_s)
        self._clock = clock
        self._wake = asyncio.Event()
        self.runs = 0
        self.last_report: CleanupReport | None = None

    async def run_once(
        self,
        dry_run: bool = False,
        processing_timeout_s: float | None = None,
        queued_timeout_s: float | None = None,
    ) -> CleanupReport:
        if processing_timeout_s is None:
            processing_timeout_s = self.processing_timeout_s
        if queued_timeout_s is None:
            queued_timeout_s = self.queued_timeout_s
        now = self._clock()

        stale = await self.store.find_stale(
            processing_cutoff=now - timedelta(seconds=processing_timeout_s),
            queued_cutoff=now - timedelta(seconds=queued_timeout_s),
        )
        report = CleanupReport(
            dry_run=dry_run,
            processing_timeout_s=processing_timeout_s,
            queued_timeout_s=queued_timeout_s,
            examined=len(stale),
        )

        for job in stale:
            outcome = await self._reconcile(job, now, dry_run)
            report.outcomes.append(outcome)
            if outcome.action == ReconcileAction.COMPLETED:
                report.completed += 1
            elif outcome.action == ReconcileAction.FAILED:
                report.failed += 1
                if not dry_run and self.refunds is not None:
                    await self.refunds.request_refund(
                        job.job_id, job.user_id, reason="STUCK_JOB_TIMEOUT"
                    )
                    report.refunds_requested += 1
            else:
                report.skipped += 1

        self.runs += 1
        self.last_report = report
        if stale:
            logger.info(
                "Reconciler sweep finished",
                dry_run=dry_run,
                examined=report.examined,
                completed=report.completed,
                failed=report.failed,
                skipped=report.skipped,
            )
        return report

    async def _reconcile(
        self, job: AnalysisJob, now: datetime, dry_run: bool
    ) -> ReconcileOutcome:
        created_at = as_utc(job.created_at)
        outcome = ReconcileOutcome(
            job_id=job.job_id,
            user_id=job.user_id,
            previous_status=job.status,
            action=ReconcileAction.SKIPPED,
        )

        result = await self.store.find_correlated_result(
            job.user_id, created_at, created_at + self.correlation_window
        )
        if result is not None:
            outcome.result_id = result.id
            outcome.reason = "Completed result found for job"
            if dry_run or await self.store.repair(
                job, JobStatus.COMPLETED, result_id=result.id
            ):
                outcome.action = ReconcileAction.COMPLETED
            return outcome

        stuck_minutes = int((now - created_at).total_seconds() // 60)
        message = (
            f"Job timed out: stuck in {job.status} for {stuck_minutes} minutes "
            "with no result"
        )
        outcome.reason = message
        if dry_run or await self.store.repair(job, JobStatus.FAILED, error_message=message):
            outcome.action = ReconcileAction.FAILED
        return outcome

    def trigger(self) -> None:
        """Wake the periodic loop for an immediate sweep."""
        self._wake.set()

    async def run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error in stuck job reconciliation")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def statistics(self, processing_timeout_s: float | None = None) -> dict[str, Any]:
        if processing_timeout_s is None:
            processing_timeout_s = self.processing_timeout_s
        stats = await self.store.statistics(
            self._clock() - timedelta(seconds=processing_timeout_s)
        )
        stats["processing_timeout_s"] = processing_timeout_s
        return stats


class StandaloneReconciler:
    """
    Reconciler with its own refund pipeline, for an ops app running without
    an in-process worker.

    Built once per app. Its refund queue is drained in the background while
    running and once more on stop. Refund markers are shared with the worker
    only through a shared state store (``STATE_STORE_BACKEND=redis``).
    """

    def __init__(
        self,
        settings: Settings,
        gateway: RefundGateway | None = None,
        state_store: StateStore | None = None,
        database: Database | None = None,
    ):
        self._owns_gateway = gateway is None
        self._owns_state_store = state_store is None
        self.gateway = HttpRefundGateway(settings) if gateway is None else gateway
        self.state_store = create_state_store(settings) if state_store is None else state_store
        self.refunds = RefundService.from_settings(settings, self.gateway, self.state_store)
        if database is None:
            database = get_database(settings)
        self.reconciler = StuckJobReconciler(
            JobStatusStore(database), settings, self.refunds
        )

    def start(self) -> None:
        self.refunds.start()

    async def stop(self) -> None:
        if self.refunds.queue:
            await self.refunds.drain()
        await self.refunds.stop()
        if self._owns_gateway:
            await self.gateway.close()
        if self._owns_state_store:
            await self.state_store.close()
