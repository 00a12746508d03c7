"""
HTTP client for the persistence (archive) service and the write discipline
around it.

Every request goes through the resilient client, so an unhealthy archive
service opens the circuit instead of tying up consumer slots. Status writes
come in two kinds:

- non-critical (``processing``, heartbeats) are buffered, coalesced per job
  and flushed on a timer or when the buffer is full;
- terminal (``completed``/``failed``) are written synchronously and their
  failure propagates to the caller.
"""

import asyncio
from collections import OrderedDict
from typing import Any

import httpx

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.v1.core.circuit_breaker import ResilientClient

logger = get_logger(__name__)


class ArchiveClient:
    """Client for the archive service's job and result endpoints."""

    def __init__(
        self,
        settings: Settings,
        resilient: ResilientClient,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.resilient = resilient
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.archive_service_url,
            timeout=settings.archive_timeout_s,
        )
        self._headers = {
            "Content-Type": "application/json",
            "X-Internal-Service": "true",
            "X-Service-Key": settings.internal_service_key,
        }

    async def close(self) -> None:
        await self._http.aclose()

    async def _send(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> Any:
        response = await self._http.request(method, path, json=json, headers=self._headers)
        response.raise_for_status()
        if not response.content:
            return None
        body = response.json()
        return body.get("data") if isinstance(body, dict) else body

    async def _request(
        self, operation: str, method: str, path: str, json: dict[str, Any] | None = None
    ) -> Any:
        return await self.resilient.call(
            operation, lambda: self._send(method, path, json)
        )

    async def create_job(
        self,
        job_id: str,
        user_id: str,
        payload: dict[str, Any],
        assessment_name: str,
    ) -> dict[str, Any]:
        return await self._request(
            "create_job",
            "POST",
            "/jobs",
            {
                "job_id": job_id,
                "user_id": user_id,
                "assessment_data": payload,
                "assessment_name": assessment_name,
                "status": "queued",
            },
        )

    async def update_job_status(
        self, job_id: str, status: str, **fields: Any
    ) -> dict[str, Any] | None:
        logger.debug("Updating job status", job_id=job_id, status=status)
        return await self._request(
            "update_job_status",
            "PUT",
            f"/jobs/{job_id}/status",
            {"status": status, **fields},
        )

    async def create_result(
        self,
        user_id: str,
        payload: dict[str, Any],
        test_result: dict[str, Any] | None,
        assessment_name: str,
        job_id: str | None = None,
        status: str = "completed",
        error_message: str | None = None,
        allow_overwrite: bool = False,
    ) -> str:
        """Store an analysis result and return its id."""
        body: dict[str, Any] = {
            "user_id": user_id,
            "assessment_data": payload,
            "test_result": test_result,
            "assessment_name": assessment_name,
            "status": status,
        }
        if job_id:
            body["job_id"] = job_id
        if error_message:
            body["error_message"] = error_message
        if allow_overwrite:
            body["allow_overwrite"] = True

        data = await self._request("create_result", "POST", "/results", body)
        logger.info("Analysis result saved", job_id=job_id, result_id=data["id"])
        return data["id"]

    async def update_result(self, result_id: str, **fields: Any) -> dict[str, Any] | None:
        return await self._request(
            "update_result", "PUT", f"/results/{result_id}", fields
        )

    async def _get_or_none(self, operation: str, path: str) -> dict[str, Any] | None:
        try:
            return await self._request(operation, "GET", path)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        return await self._get_or_none("get_job", f"/jobs/{job_id}")

    async def get_result(self, result_id: str) -> dict[str, Any] | None:
        return await self._get_or_none("get_result", f"/results/{result_id}")

    async def health_check(self) -> bool:
        """Probe the archive service directly, bypassing the breaker."""
        try:
            response = await self._http.get("/health", headers=self._headers, timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("Archive service health check failed", error=str(e))
            return False


class StatusWriteBuffer:
    """Coalesces non-critical status writes and keeps terminal writes synchronous."""

    def __init__(
        self,
        client: ArchiveClient,
        batch_size: int = 10,
        interval_s: float = 5.0,
        max_attempts: int = 3,
    ):
        self.client = client
        self.batch_size = batch_size
        self.interval_s = interval_s
        self.max_attempts = max_attempts
        self._pending: dict[str, dict[str, Any]] = {}
        self._attempts: dict[str, int] = {}
        self._finalized: OrderedDict[str, None] = OrderedDict()
        self._task: asyncio.Task | None = None
        self._flush_lock = asyncio.Lock()
        self.flushed = 0
        self.dropped = 0

    @classmethod
    def from_settings(cls, client: ArchiveClient, settings: Settings) -> "StatusWriteBuffer":
        return cls(
            client,
            batch_size=settings.write_batch_size,
            interval_s=settings.write_batch_interval_s,
        )

    @property
    def pending(self) -> dict[str, dict[str, Any]]:
        return {job_id: dict(update) for job_id, update in self._pending.items()}

    async def enqueue(self, job_id: str, status: str, **fields: Any) -> None:
        """Buffer a best-effort update; later updates for a job replace earlier fields."""
        if job_id in self._finalized:
            return
        update = self._pending.setdefault(job_id, {})
        update.update(fields, status=status)
        if len(self._pending) >= self.batch_size:
            await self.flush()

    async def flush(self) -> int:
        """Write every pending update. Failures are re-queued or dropped, never raised."""
        async with self._flush_lock:
            batch, self._pending = self._pending, {}
            written = 0
            for job_id, update in batch.items():
                if job_id in self._finalized:
                    continue
                fields = dict(update)
                status = fields.pop("status")
                try:
                    await self.client.update_job_status(job_id, status, **fields)
                except Exception as e:
                    self._requeue(job_id, update, e)
                    continue
                self._attempts.pop(job_id, None)
                written += 1

            self.flushed += written
            if batch:
                logger.debug("Flushed status updates", written=written, batch=len(batch))
            return written

    def _requeue(self, job_id: str, update: dict[str, Any], error: Exception) -> None:
        attempts = self._attempts.get(job_id, 0) + 1
        if attempts >= self.max_attempts:
            self._attempts.pop(job_id, None)
            self.dropped += 1
            logger.error(
                "Dropping buffered status update",
                job_id=job_id,
                status=update.get("status"),
                attempts=attempts,
                error=str(error),
            )
            return

        self._attempts[job_id] = attempts
        # A newer update enqueued during the flush wins over the failed one
        newer = self._pending.get(job_id, {})
        self._pending[job_id] = {**update, **newer}
        logger.warning(
            "Buffered status update failed, re-queued",
            job_id=job_id,
            attempts=attempts,
            error=str(error),
        )

    async def write_terminal(self, job_id: str, status: str, **fields: Any) -> Any:
        """Synchronous terminal write. Pending buffered updates for the job are discarded."""
        self._pending.pop(job_id, None)
        self._attempts.pop(job_id, None)
        self._finalized[job_id] = None
        while len(self._finalized) > 10000:
            self._finalized.popitem(last=False)
        return await self.client.update_job_status(job_id, status, **fields)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.flush()
            except Exception:
                logger.exception("Error flushing status updates")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the flush timer and write whatever is still pending."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    def stats(self) -> dict[str, Any]:
        return {
            "pending": len(self._pending),
            "flushed": self.flushed,
            "dropped": self.dropped,
            "batch_size": self.batch_size,
            "interval_s": self.interval_s,
        }
