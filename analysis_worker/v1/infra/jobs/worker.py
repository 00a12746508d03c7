"""
Analysis worker runtime: wires the pipeline together and runs its background loops.
"""

import asyncio
import os
import signal
import socket
from typing import Any

import httpx

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.broker import Broker, create_broker
from analysis_worker.infra.database import Database, get_database
from analysis_worker.infra.state_store import StateStore, create_state_store
from analysis_worker.v1.core.circuit_breaker import CircuitBreaker, ResilientClient
from analysis_worker.v1.core.rate_limiter import AdmissionRateLimiter, ProviderRateGate
from analysis_worker.v1.core.registries import AnalyzerRegistry
from analysis_worker.v1.infra.archive_client import ArchiveClient, StatusWriteBuffer
from analysis_worker.v1.infra.events import EventPublisher, NotificationClient
from analysis_worker.v1.infra.jobs.consumer import MessageConsumer
from analysis_worker.v1.infra.jobs.dead_letter import DeadLetterMonitor, DeadLetterRouter
from analysis_worker.v1.infra.jobs.dedup import DeduplicationGuard
from analysis_worker.v1.infra.jobs.heartbeat import Heartbeat
from analysis_worker.v1.infra.jobs.processor import AssessmentProcessor
from analysis_worker.v1.infra.jobs.reconciler import StuckJobReconciler
from analysis_worker.v1.infra.jobs.registry_init import register_analyzers
from analysis_worker.v1.infra.jobs.store import JobStatusStore
from analysis_worker.v1.infra.refunds import HttpRefundGateway, RefundGateway, RefundService

logger = get_logger(__name__)


class AnalysisWorker:
    """
    Queue-driven assessment analysis worker.

    Features:
    - Bounded concurrent consumption with dead-letter routing
    - Content-hash deduplication and multi-tier rate limiting
    - Circuit breaker around the archive service
    - Heartbeats, stuck job reconciliation and refunds
    - Graceful shutdown on SIGINT/SIGTERM
    """

    def __init__(
        self,
        settings: Settings,
        broker: Broker | None = None,
        state_store: StateStore | None = None,
        database: Database | None = None,
        archive_http: httpx.AsyncClient | None = None,
        refund_gateway: RefundGateway | None = None,
        notifier: NotificationClient | None = None,
        analyzers: AnalyzerRegistry | None = None,
    ):
        self.settings = settings
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self._background: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()

        self.broker = broker or create_broker(settings)
        self.state_store = state_store or create_state_store(settings)
        self.database = database or get_database(settings)

        breaker = CircuitBreaker.from_settings("archive_service", settings, self.state_store)
        self.breaker = breaker
        self.archive = ArchiveClient(
            settings, ResilientClient.from_settings(breaker, settings), archive_http
        )
        self.buffer = StatusWriteBuffer.from_settings(self.archive, settings)
        self.heartbeat = Heartbeat.from_settings(settings, self.buffer)
        self.dedup = DeduplicationGuard.from_settings(
            settings, self.state_store, self.archive.get_result
        )
        self.admission = AdmissionRateLimiter.from_settings(settings, self.state_store)
        self.provider_gate = ProviderRateGate.from_settings(settings, self.state_store)
        self.notifier = notifier or NotificationClient(settings)
        self.events = EventPublisher(self.broker, settings, self.notifier)
        self.refunds = RefundService.from_settings(
            settings, refund_gateway or HttpRefundGateway(settings), self.state_store
        )
        self.analyzers = analyzers or register_analyzers(settings)

        self.router = DeadLetterRouter(
            self.broker, settings, self.buffer, self.events, self.refunds
        )
        self.processor = AssessmentProcessor(
            settings,
            self.dedup,
            self.admission,
            self.provider_gate,
            self.analyzers,
            self.archive,
            self.buffer,
            self.heartbeat,
            self.events,
        )
        self.consumer = MessageConsumer(self.broker, self.processor, self.router, settings)
        self.job_store = JobStatusStore(self.database)
        self.reconciler = StuckJobReconciler(self.job_store, settings, self.refunds)
        self.dlq_monitor = DeadLetterMonitor(self.broker, settings)

    async def start(self) -> None:
        """Connect, start consuming and launch the background loops."""
        if self.running:
            raise RuntimeError("Worker is already running")

        logger.info(
            "Starting analysis worker",
            worker_id=self.worker_id,
            concurrency=self.settings.worker_concurrency,
            state_store=self.settings.state_store_backend.value,
        )

        await self.broker.connect()
        self.buffer.start()
        self.refunds.start()
        await self.consumer.start()

        self._background = [
            asyncio.create_task(self.reconciler.run_forever()),
            asyncio.create_task(self.dlq_monitor.run_forever()),
            asyncio.create_task(self._heartbeat_sweep_loop()),
            asyncio.create_task(self._dedup_eviction_loop()),
            asyncio.create_task(self._liveness_loop()),
        ]
        self.running = True

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if not self.running:
            return
        logger.info("Stopping analysis worker", worker_id=self.worker_id)
        self.running = False

        await self.consumer.stop()

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []

        for job_id in self.heartbeat.active_jobs():
            await self.heartbeat.stop(job_id)
        await self.buffer.stop()
        await self.refunds.stop()
        await self.broker.close()
        await self.archive.close()
        await self.state_store.close()
        logger.info("Analysis worker stopped", worker_id=self.worker_id)

    async def run(self) -> None:
        """Run until SIGINT or SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._stop_event.set)

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
            await self.database.close()

    async def _heartbeat_sweep_loop(self) -> None:
        """Fail jobs whose heartbeat outlived the absolute ceiling."""
        while True:
            await asyncio.sleep(self.settings.heartbeat_sweep_interval_s)
            try:
                await self.heartbeat.sweep()
            except Exception:
                logger.exception("Error in heartbeat sweep")

    async def _dedup_eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.dedup_eviction_interval_s)
            try:
                await self.dedup.evict()
            except Exception:
                logger.exception("Error evicting dedup entries")

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.liveness_log_interval_s)
            logger.info(
                "Worker alive",
                worker_id=self.worker_id,
                active_heartbeats=len(self.heartbeat.active_jobs()),
                in_flight=self.consumer.in_flight,
                processed=self.consumer.processed,
            )

    async def health(self) -> dict[str, Any]:
        """Component stats for the health endpoint."""
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "healthy": self.consumer.is_healthy(),
            "consumer": self.consumer.stats(),
            "dedup": await self.dedup.stats(),
            "rate_limiter": {
                "admission": self.admission.stats(),
                "provider": await self.provider_gate.stats(),
            },
            "circuit_breaker": await self.breaker.stats(),
            "write_buffer": self.buffer.stats(),
            "heartbeat": self.heartbeat.stats(),
            "dead_letter": {
                **self.router.stats(),
                "queue_depth": self.dlq_monitor.last_depth,
            },
            "refunds": self.refunds.stats(),
            "events": self.events.stats(),
        }


# Worker instance management
_worker_instance: AnalysisWorker | None = None


def get_worker(settings: Settings) -> AnalysisWorker:
    """Get or create the global worker instance."""
    global _worker_instance
    if _worker_instance is None:
        _worker_instance = AnalysisWorker(settings)
    return _worker_instance
