"""API Endpoint Wrappers - Typed ops API calls"""

from typing import Any

import httpx

from analysis_worker.config.settings import settings

from .base import APIClient


def default_base_url() -> str:
    return f"http://{settings.host}:{settings.port}"


class WorkerOpsClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api = APIClient(base_url=base_url or default_base_url(), transport=transport)

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def health_check(self) -> dict[str, Any]:
        """Check worker health status"""
        return self.api.get("/healthz")

    def job_stats(self, processing_timeout_s: float | None = None) -> dict[str, Any]:
        """Status breakdown and stuck-job summary"""
        params = {}
        if processing_timeout_s is not None:
            params["processing_timeout_s"] = processing_timeout_s
        return self.api.get("/jobs/stats", params=params or None)

    def cleanup(
        self,
        dry_run: bool = False,
        processing_timeout_s: float | None = None,
        queued_timeout_s: float | None = None,
    ) -> dict[str, Any]:
        """Run the stuck-job reconciler once"""
        body: dict[str, Any] = {"dry_run": dry_run}
        if processing_timeout_s is not None:
            body["processing_timeout_s"] = processing_timeout_s
        if queued_timeout_s is not None:
            body["queued_timeout_s"] = queued_timeout_s
        return self.api.post("/jobs/cleanup", json=body)
