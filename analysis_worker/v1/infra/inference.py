"""
Analyzers backed by the external inference provider.
"""

from typing import Any

import httpx

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.v1.core.exceptions import InferenceProviderError

logger = get_logger(__name__)


class HttpInferenceProvider:
    """Sends assessment data to the provider and returns the persona profile.

    Any provider failure, including timeouts, is an InferenceProviderError:
    the request may already have been billed, so it is never redelivered.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._http = http_client or httpx.AsyncClient(timeout=settings.inference_timeout_s)
        self._headers = {
            "X-Internal-Service": "true",
            "X-Service-Key": settings.internal_service_key,
        }

    async def analyze(
        self, job_id: str, user_id: str, payload: dict[str, Any], assessment_name: str
    ) -> dict[str, Any]:
        logger.info("Requesting analysis from provider", job_id=job_id)
        try:
            response = await self._http.post(
                self.settings.inference_url,
                json={
                    "job_id": job_id,
                    "user_id": user_id,
                    "assessment_name": assessment_name,
                    "assessment_data": payload,
                },
                headers=self._headers,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise InferenceProviderError(
                f"Inference provider returned {e.response.status_code}",
                {"response_status": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise InferenceProviderError(f"Inference request failed: {e}") from e

        result = body.get("data", body) if isinstance(body, dict) else None
        if not isinstance(result, dict):
            raise InferenceProviderError("Inference provider returned no result")
        return result

    async def close(self) -> None:
        await self._http.aclose()


_ARCHETYPES = {
    ("realistic", "investigative"): "The Practical Analyst",
    ("investigative", "artistic"): "The Creative Researcher",
    ("artistic", "social"): "The Creative Communicator",
    ("social", "enterprising"): "The People Leader",
    ("enterprising", "conventional"): "The Strategic Organizer",
    ("conventional", "realistic"): "The Detail-Oriented Implementer",
}


class MockAnalyzer:
    """Deterministic local analyzer for development; never calls the provider."""

    async def analyze(
        self, job_id: str, user_id: str, payload: dict[str, Any], assessment_name: str
    ) -> dict[str, Any]:
        riasec = payload.get("riasec") or {}
        ranked = sorted(riasec, key=lambda k: riasec[k], reverse=True)[:2]
        archetype = _ARCHETYPES.get(tuple(ranked), "The Balanced Professional")
        top = ranked[0] if ranked else "balanced"
        return {
            "archetype": archetype,
            "shortSummary": f"{archetype} with a strong {top} orientation.",
            "strengths": [f"{name} interests" for name in ranked] or ["adaptability"],
            "assessment_name": assessment_name,
        }
