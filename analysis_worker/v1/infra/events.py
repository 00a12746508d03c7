"""
Job lifecycle events with a direct-notification fallback.
"""

from typing import Any

import httpx

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.broker import Broker
from analysis_worker.v1.infra.jobs.schemas import EventType, JobEvent

logger = get_logger(__name__)


class NotificationClient:
    """Posts analysis outcomes straight to the notification service."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.notification_service_url, timeout=10.0
        )
        self._headers = {
            "X-Internal-Service": "true",
            "X-Service-Key": settings.internal_service_key,
        }

    async def close(self) -> None:
        await self._http.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> bool:
        try:
            response = await self._http.post(path, json=body, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Notification fallback failed",
                path=path,
                job_id=body.get("jobId"),
                error=str(e),
            )
            return False
        return True

    async def analysis_complete(self, user_id: str, job_id: str, result_id: str | None) -> bool:
        return await self._post(
            "/notifications/analysis-complete",
            {"userId": user_id, "jobId": job_id, "resultId": result_id, "status": "completed"},
        )

    async def analysis_failed(self, user_id: str, job_id: str, error: str) -> bool:
        return await self._post(
            "/notifications/analysis-failed",
            {"userId": user_id, "jobId": job_id, "error": error, "status": "failed"},
        )


class EventPublisher:
    def __init__(self, broker: Broker, settings: Settings, notifier: NotificationClient | None = None):
        self.broker = broker
        self.exchange = settings.events_exchange_name
        self.notifier = notifier
        self.published = 0
        self.failed = 0
        self.fallbacks = 0

    async def _publish(self, event: JobEvent) -> bool:
        try:
            await self.broker.publish(
                self.exchange, event.event_type.value, event.to_body()
            )
        except Exception as e:
            self.failed += 1
            logger.error(
                "Failed to publish job event",
                event_type=event.event_type.value,
                job_id=event.job_id,
                error=str(e),
            )
            return False
        self.published += 1
        return True

    async def job_started(self, job_id: str, user_id: str, metadata: dict[str, Any]) -> bool:
        return await self._publish(
            JobEvent(
                event_type=EventType.STARTED,
                job_id=job_id,
                user_id=user_id,
                metadata=metadata,
            )
        )

    async def job_completed(
        self,
        job_id: str,
        user_id: str,
        result_reference: str | None,
        metadata: dict[str, Any],
    ) -> bool:
        published = await self._publish(
            JobEvent(
                event_type=EventType.COMPLETED,
                job_id=job_id,
                user_id=user_id,
                result_reference=result_reference,
                metadata=metadata,
            )
        )
        if not published and self.notifier is not None:
            self.fallbacks += 1
            await self.notifier.analysis_complete(user_id, job_id, result_reference)
        return published

    async def job_failed(
        self, job_id: str, user_id: str, error: str, metadata: dict[str, Any]
    ) -> bool:
        published = await self._publish(
            JobEvent(
                event_type=EventType.FAILED,
                job_id=job_id,
                user_id=user_id,
                error=error,
                metadata=metadata,
            )
        )
        if not published and self.notifier is not None:
            self.fallbacks += 1
            await self.notifier.analysis_failed(user_id, job_id, error)
        return published

    def stats(self) -> dict[str, int]:
        return {
            "published": self.published,
            "failed": self.failed,
            "fallbacks": self.fallbacks,
        }
