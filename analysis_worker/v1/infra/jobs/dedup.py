"""
Content-based job deduplication.

Two jobs are identical when they come from the same user with the same
semantically relevant assessment fields. While one of them is processing the
other is rejected; once one has completed, the stored result is reused for the
retention window instead of paying the inference provider again.
"""

import hashlib
import json
import time
from typing import Any, Awaitable, Callable

from analysis_worker.config.logging import get_logger
from analysis_worker.config.settings import Settings
from analysis_worker.infra.state_store import StateStore
from analysis_worker.v1.infra.jobs.schemas import DedupDecision, DedupReason

logger = get_logger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"

ResultLookup = Callable[[str], Awaitable[dict[str, Any] | None]]


def compute_hash(user_id: str, payload: dict[str, Any], fields: list[str]) -> str:
    """SHA-256 over canonical JSON of the user id and the relevant payload fields."""
    relevant = {name: payload.get(name) for name in fields}
    canonical = json.dumps(
        {"user_id": user_id, "payload": relevant},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class DeduplicationGuard:
    def __init__(
        self,
        store: StateStore,
        result_lookup: ResultLookup,
        hash_fields: list[str] | None = None,
        required_fields: list[str] | None = None,
        retention_s: float = 3600,
        processing_ttl_s: float = 3600,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.result_lookup = result_lookup
        self.hash_fields = hash_fields or ["riasec", "ocean", "viaIs"]
        self.required_fields = required_fields or ["archetype", "shortSummary"]
        self.retention_s = retention_s
        self.processing_ttl_s = processing_ttl_s
        self.max_entries = max_entries
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: StateStore,
        result_lookup: ResultLookup,
        clock: Callable[[], float] = time.time,
    ) -> "DeduplicationGuard":
        return cls(
            store,
            result_lookup,
            hash_fields=settings.dedup_hash_fields,
            required_fields=settings.result_required_fields,
            retention_s=settings.dedup_retention_s,
            processing_ttl_s=settings.dedup_processing_ttl_s,
            max_entries=settings.dedup_max_entries,
            clock=clock,
        )

    def compute_hash(self, user_id: str, payload: dict[str, Any]) -> str:
        return compute_hash(user_id, payload, self.hash_fields)

    @staticmethod
    def _key(content_hash: str) -> str:
        return f"dedup:{content_hash}"

    def _is_expired(self, entry: dict[str, Any], now: float) -> bool:
        age = now - entry["timestamp"]
        if entry["state"] == PROCESSING:
            return age > self.processing_ttl_s
        return age > self.retention_s

    async def admit(
        self, job_id: str, user_id: str, payload: dict[str, Any]
    ) -> DedupDecision:
        content_hash = self.compute_hash(user_id, payload)
        key = self._key(content_hash)
        now = self._clock()
        allow_overwrite = False

        entry = await self.store.get(key)
        if entry is not None and self._is_expired(entry, now):
            await self.store.delete(key)
            entry = None

        if entry is not None and entry["owning_job_id"] == job_id and entry["state"] == PROCESSING:
            # Redelivery of the job that already owns the entry
            await self.store.set(key, {**entry, "timestamp": now}, ttl_s=self.processing_ttl_s)
            return DedupDecision(
                admitted=True, content_hash=content_hash, reason=DedupReason.NEW
            )

        if entry is not None and entry["state"] == PROCESSING:
            logger.info(
                "Duplicate job rejected, original still processing",
                job_id=job_id,
                original_job_id=entry["owning_job_id"],
            )
            return DedupDecision(
                admitted=False,
                content_hash=content_hash,
                reason=DedupReason.CURRENTLY_PROCESSING,
                original_job_id=entry["owning_job_id"],
            )

        if entry is not None and entry["state"] == COMPLETED:
            result_reference = entry.get("result_reference")
            if await self._is_result_complete(result_reference, job_id):
                logger.info(
                    "Duplicate job resolved from recent result",
                    job_id=job_id,
                    original_job_id=entry["owning_job_id"],
                    result_reference=result_reference,
                )
                return DedupDecision(
                    admitted=False,
                    content_hash=content_hash,
                    reason=DedupReason.RECENTLY_PROCESSED,
                    original_job_id=entry["owning_job_id"],
                    result_reference=result_reference,
                )
            logger.warning(
                "Cached result incomplete, reprocessing",
                job_id=job_id,
                result_reference=result_reference,
            )
            await self.store.delete(key)
            allow_overwrite = True

        created = await self.store.set_if_absent(
            key,
            {
                "content_hash": content_hash,
                "state": PROCESSING,
                "owning_job_id": job_id,
                "result_reference": None,
                "timestamp": now,
            },
            ttl_s=self.processing_ttl_s,
        )
        if not created:
            # Lost the race to a concurrent admission of the same content
            winner = await self.store.get(key) or {}
            return DedupDecision(
                admitted=False,
                content_hash=content_hash,
                reason=DedupReason.CURRENTLY_PROCESSING,
                original_job_id=winner.get("owning_job_id"),
            )

        return DedupDecision(
            admitted=True,
            content_hash=content_hash,
            reason=(
                DedupReason.INCOMPLETE_RESULT_REPROCESSING
                if allow_overwrite
                else DedupReason.NEW
            ),
            allow_overwrite=allow_overwrite,
        )

    async def _is_result_complete(self, result_reference: str | None, job_id: str) -> bool:
        if not result_reference:
            return False
        try:
            result = await self.result_lookup(result_reference)
        except Exception as e:
            # Fail open: an unreachable lookup is treated as a complete result
            logger.warning(
                "Result completeness check failed, assuming complete",
                job_id=job_id,
                result_reference=result_reference,
                error=str(e),
            )
            return True

        if not result:
            return False
        document = result.get("test_result") or result.get("persona_profile") or result
        if not isinstance(document, dict):
            return False
        return all(document.get(name) for name in self.required_fields)

    async def complete(self, content_hash: str, job_id: str, result_reference: str) -> None:
        await self.store.set(
            self._key(content_hash),
            {
                "content_hash": content_hash,
                "state": COMPLETED,
                "owning_job_id": job_id,
                "result_reference": result_reference,
                "timestamp": self._clock(),
            },
            ttl_s=self.retention_s,
        )

    async def fail(self, content_hash: str, job_id: str) -> bool:
        """Release a processing entry, but only one owned by ``job_id``."""
        key = self._key(content_hash)
        entry = await self.store.get(key)
        if entry is None or entry["owning_job_id"] != job_id or entry["state"] != PROCESSING:
            return False
        return await self.store.delete(key)

    async def evict(self, now: float | None = None) -> int:
        """Drop stale and expired entries, then enforce the capacity cap."""
        now = self._clock() if now is None else now
        removed = 0
        try:
            entries = await self.store.scan("dedup:")
            live = []
            for key, entry in entries.items():
                if self._is_expired(entry, now):
                    await self.store.delete(key)
                    removed += 1
                else:
                    live.append((entry["timestamp"], key))

            overflow = len(live) - self.max_entries
            if overflow > 0:
                for _, key in sorted(live)[:overflow]:
                    await self.store.delete(key)
                    removed += 1
        except Exception as e:
            logger.error("Dedup eviction failed", error=str(e), removed=removed)
            return removed

        if removed:
            logger.info("Evicted dedup entries", removed=removed)
        return removed

    async def stats(self) -> dict[str, Any]:
        entries = await self.store.scan("dedup:")
        processing = sum(1 for entry in entries.values() if entry["state"] == PROCESSING)
        return {
            "processing": processing,
            "completed": len(entries) - processing,
            "retention_s": self.retention_s,
            "processing_ttl_s": self.processing_ttl_s,
            "max_entries": self.max_entries,
            "hash_fields": list(self.hash_fields),
        }
