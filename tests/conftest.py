import asyncio
import json
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from analysis_worker.config.settings import Settings
from analysis_worker.infra.broker import Delivery, InMemoryBroker
from analysis_worker.infra.database import Base, Database
from analysis_worker.infra.state_store import InMemoryStateStore
from analysis_worker.v1.core.registries import DEFAULT_ANALYZER, AnalyzerRegistry
from analysis_worker.v1.infra.events import NotificationClient
from analysis_worker.v1.infra.jobs import models  # noqa: F401
from analysis_worker.v1.infra.jobs.schemas import DEFAULT_ASSESSMENT_NAME
from analysis_worker.v1.infra.jobs.worker import AnalysisWorker

ARCHIVE_URL = "http://archive.test"
NOTIFY_URL = "http://notify.test"

ASSESSMENT = {
    "riasec": {"realistic": 4.1, "investigative": 3.2, "artistic": 2.0},
    "ocean": {"openness": 4.5, "conscientiousness": 3.9},
    "viaIs": {"curiosity": 4.8},
}


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeArchiveService:
    """In-memory stand-in for the archive service, served through httpx.MockTransport."""

    def __init__(self):
        self.jobs: dict[str, dict[str, Any]] = {}
        self.results: dict[str, dict[str, Any]] = {}
        self.status_updates: list[tuple[str, dict[str, Any]]] = []
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": "archive unavailable"})

        parts = [part for part in request.url.path.split("/") if part]
        body = json.loads(request.content) if request.content else {}

        if request.method == "GET" and parts == ["health"]:
            return httpx.Response(200, json={"ok": True})

        if parts[:1] == ["jobs"]:
            if request.method == "POST" and len(parts) == 1:
                self.jobs[body["job_id"]] = body
                return httpx.Response(201, json={"data": body})
            job_id = parts[1]
            if request.method == "PUT" and parts[2:] == ["status"]:
                self.status_updates.append((job_id, body))
                self.jobs.setdefault(job_id, {}).update(body)
                return httpx.Response(200, json={"data": self.jobs[job_id]})
            if request.method == "GET" and job_id in self.jobs:
                return httpx.Response(200, json={"data": self.jobs[job_id]})

        if parts[:1] == ["results"]:
            if request.method == "POST" and len(parts) == 1:
                result_id = f"result-{len(self.results) + 1}"
                self.results[result_id] = {"id": result_id, **body}
                return httpx.Response(201, json={"data": self.results[result_id]})
            result_id = parts[1]
            if result_id in self.results:
                if request.method == "PUT":
                    self.results[result_id].update(body)
                return httpx.Response(200, json={"data": self.results[result_id]})

        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=ARCHIVE_URL, transport=httpx.MockTransport(self.handler)
        )

    def statuses(self, job_id: str) -> list[str]:
        return [update["status"] for jid, update in self.status_updates if jid == job_id]

    def last_update(self, job_id: str) -> dict[str, Any]:
        return [update for jid, update in self.status_updates if jid == job_id][-1]


class FakeRefundGateway:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[dict[str, Any]] = []

    async def refund(self, user_id: str, amount: int, job_id: str, reason: str) -> None:
        self.calls.append(
            {"user_id": user_id, "amount": amount, "job_id": job_id, "reason": reason}
        )
        if self.failures > 0:
            self.failures -= 1
            raise httpx.ConnectError("token balance service unreachable")


class StubAnalyzer:
    def __init__(self, result: dict[str, Any] | None = None, error: Exception | None = None):
        self.result = result or {
            "archetype": "The Practical Analyst",
            "shortSummary": "Grounded and methodical.",
        }
        self.error = error
        self.calls: list[str] = []
        self.hold: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def analyze(
        self, job_id: str, user_id: str, payload: dict[str, Any], assessment_name: str
    ) -> dict[str, Any]:
        self.calls.append(job_id)
        self.started.set()
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error
        return dict(self.result)


def make_delivery(body: dict[str, Any], headers: dict[str, Any] | None = None) -> Delivery:
    async def settle(ack: bool, requeue: bool) -> None:
        pass

    return Delivery(json.dumps(body).encode(), headers or {}, settle)


def job_body(job_id: str = "job-1", user_id: str = "user-1", **overrides: Any) -> dict[str, Any]:
    body = {
        "job_id": job_id,
        "user_id": user_id,
        "contact_info": "user@example.com",
        "payload": ASSESSMENT,
        "assessment_name": DEFAULT_ASSESSMENT_NAME,
    }
    body.update(overrides)
    return body


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStateStore(clock)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}",
        rabbitmq_url="memory://",
        archive_service_url=ARCHIVE_URL,
        notification_service_url=NOTIFY_URL,
        client_max_retries=0,
        retry_delay_ms=0,
        write_batch_size=100,
        debug=False,
    )


@pytest.fixture
async def database(settings):
    database = Database(settings)
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield database
    await database.close()


@pytest.fixture
def archive():
    return FakeArchiveService()


@pytest.fixture
def refund_gateway():
    return FakeRefundGateway()


@pytest.fixture
def analyzer():
    return StubAnalyzer()


@pytest.fixture
def notifications():
    """Requests that reached the notification fallback."""
    return []


@pytest.fixture
async def worker(settings, database, archive, refund_gateway, analyzer, notifications):
    def notify(request: httpx.Request) -> httpx.Response:
        notifications.append(request)
        return httpx.Response(200, json={"ok": True})

    registry = AnalyzerRegistry()
    registry.register(DEFAULT_ANALYZER, analyzer)

    worker = AnalysisWorker(
        settings,
        broker=InMemoryBroker(settings),
        state_store=InMemoryStateStore(),
        database=database,
        archive_http=archive.client(),
        refund_gateway=refund_gateway,
        notifier=NotificationClient(
            settings,
            httpx.AsyncClient(base_url=NOTIFY_URL, transport=httpx.MockTransport(notify)),
        ),
        analyzers=registry,
    )
    await worker.broker.connect()
    yield worker
    await worker.broker.close()
    for job_id in worker.heartbeat.active_jobs():
        await worker.heartbeat.stop(job_id)
    await worker.archive.close()


@pytest.fixture
def fakes(archive, refund_gateway, analyzer, notifications):
    return SimpleNamespace(
        archive=archive,
        refunds=refund_gateway,
        analyzer=analyzer,
        notifications=notifications,
    )
