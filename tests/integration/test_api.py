"""
Integration tests for the operator API endpoints.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from jobengine.api.main import create_app
from jobengine.backends import BackendManager, MemoryBackend
from jobengine.bus import Dispatcher, Job
from jobengine.exceptions import BackendUnavailable


@pytest.fixture
def manager(memory_backend: MemoryBackend) -> BackendManager:
    return BackendManager.single(memory_backend)


@pytest_asyncio.fixture
async def client(manager: BackendManager) -> AsyncGenerator[AsyncClient]:
    """HTTP client bound to an app serving the in-memory backend."""
    app = create_app(manager)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def failed_job(memory_backend: MemoryBackend):
    """A failed job recorded for a dispatched envelope."""
    envelope = await Dispatcher(memory_backend).dispatch(Job.of("send_email", to="a@example.com"))
    await memory_backend.reserve("default", 90)
    return await memory_backend.fail(envelope.id, "Traceback...\nValueError: bad address")


class TestHealthAPI:
    """Tests for health endpoints."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["connections"] == {"memory": "healthy"}

    async def test_health_degraded(self, client: AsyncClient, memory_backend, monkeypatch):
        async def unavailable(queue):
            raise BackendUnavailable("down")

        monkeypatch.setattr(memory_backend, "count_pending", unavailable)

        response = await client.get("/health")

        assert response.json()["status"] == "degraded"
        assert response.json()["connections"] == {"memory": "unhealthy"}

    async def test_live(self, client: AsyncClient):
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json() == {"alive": True}

    async def test_metrics(self, client: AsyncClient):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "jobengine_jobs_processed_total" in response.text


class TestFailedJobsAPI:
    """Tests for the failed job store endpoints."""

    async def test_list_failed_jobs(self, client: AsyncClient, failed_job):
        response = await client.get("/v1/failed-jobs")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        item = data["failed_jobs"][0]
        assert item["id"] == failed_job.id
        assert item["job_type"] == "send_email"
        assert item["args"] == {"to": "a@example.com"}

    async def test_list_filters_by_queue(self, client: AsyncClient, failed_job):
        response = await client.get("/v1/failed-jobs", params={"queue": "other"})

        assert response.json()["total"] == 0

    async def test_get_by_original_id(self, client: AsyncClient, failed_job):
        response = await client.get(f"/v1/failed-jobs/{failed_job.original_id}")

        assert response.status_code == 200
        assert response.json()["id"] == failed_job.id

    async def test_get_not_found(self, client: AsyncClient):
        response = await client.get("/v1/failed-jobs/missing")

        assert response.status_code == 404

    async def test_retry(self, client: AsyncClient, failed_job, memory_backend):
        response = await client.post(f"/v1/failed-jobs/{failed_job.id}/retry")

        assert response.status_code == 200
        (job_id,) = response.json()["job_ids"]
        assert job_id != failed_job.original_id
        envelope = await memory_backend.get(job_id)
        assert envelope.attempts == 0
        assert await memory_backend.list_failed() == []

    async def test_retry_not_found(self, client: AsyncClient):
        response = await client.post("/v1/failed-jobs/missing/retry")

        assert response.status_code == 404

    async def test_retry_all(self, client: AsyncClient, failed_job, memory_backend):
        response = await client.post("/v1/failed-jobs/retry-all")

        assert response.status_code == 200
        assert len(response.json()["job_ids"]) == 1
        assert await memory_backend.count_pending("default") == 1

    async def test_forget(self, client: AsyncClient, failed_job):
        response = await client.delete(f"/v1/failed-jobs/{failed_job.id}")

        assert response.status_code == 200
        assert response.json() == {"deleted": 1}
        assert (await client.delete(f"/v1/failed-jobs/{failed_job.id}")).status_code == 404

    async def test_flush(self, client: AsyncClient, failed_job):
        response = await client.delete("/v1/failed-jobs")

        assert response.json() == {"deleted": 1}

    async def test_unknown_connection(self, client: AsyncClient):
        response = await client.get("/v1/failed-jobs", params={"connection": "nope"})

        assert response.status_code == 404

    async def test_backend_unavailable_returns_503(self, client: AsyncClient, memory_backend, monkeypatch):
        async def unavailable(queue=None, limit=100):
            raise BackendUnavailable("connection refused")

        monkeypatch.setattr(memory_backend, "list_failed", unavailable)

        response = await client.get("/v1/failed-jobs")

        assert response.status_code == 503
        assert response.json()["error"] == "backend_unavailable"


class TestBatchAPI:
    """Tests for batch endpoints."""

    async def test_get_batch(self, client: AsyncClient, memory_backend):
        batch_id = await Dispatcher(memory_backend).batch([Job.of("a"), Job.of("b")]).name("import").dispatch()

        response = await client.get(f"/v1/batches/{batch_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "import"
        assert data["total_jobs"] == 2
        assert data["pending_jobs"] == 2
        assert data["progress"] == 0.0
        assert data["finished"] is False

    async def test_cancel_batch(self, client: AsyncClient, memory_backend):
        batch_id = await Dispatcher(memory_backend).batch([Job.of("a")]).dispatch()

        response = await client.post(f"/v1/batches/{batch_id}/cancel")

        assert response.status_code == 200
        assert response.json()["cancelled"] is True

    async def test_batch_not_found(self, client: AsyncClient):
        assert (await client.get("/v1/batches/missing")).status_code == 404
        assert (await client.post("/v1/batches/missing/cancel")).status_code == 404


class TestQueueAPI:
    """Tests for queue depth."""

    async def test_queue_depth(self, client: AsyncClient, memory_backend):
        dispatcher = Dispatcher(memory_backend)
        await dispatcher.dispatch_many([Job.of("a"), Job.of("b")], queue="emails")

        response = await client.get("/v1/queues/emails")

        assert response.status_code == 200
        assert response.json() == {"name": "emails", "connection": "memory", "pending": 2}

    async def test_unknown_connection(self, client: AsyncClient):
        response = await client.get("/v1/queues/emails", params={"connection": "nope"})

        assert response.status_code == 404
