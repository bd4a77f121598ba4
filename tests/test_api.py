import time
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel

from jobqueue import QueueRegistry
from jobqueue.main import create_app

class Resize(BaseModel):
    url: str
    width: int

async def resize(payload: Resize, progress):
    progress(50)
    return {"url": payload.url, "width": payload.width}

@pytest.fixture
def client(database_url):
    registry = QueueRegistry(database_url, poll_interval=0.05, ticker_interval=0.05, shutdown_grace=2.0)
    registry.register_handler("images", "resize", resize, schema=Resize)
    with TestClient(create_app(registry)) as client:
        yield client

@pytest.fixture
def producer_client(database_url):
    registry = QueueRegistry(database_url)
    with TestClient(create_app(registry, run_workers=False)) as client:
        yield client

def wait_for_state(client, queue_name, job_id, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/api/v1/queues/{queue_name}/jobs/{job_id}")
        assert response.status_code == 200
        body = response.json()
        if body["state"] == state:
            return body
        assert time.monotonic() < deadline, body
        time.sleep(0.02)

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

def test_create_and_complete_job(client):
    response = client.post(
        "/api/v1/queues/images/jobs",
        json={"job_type": "resize", "payload": {"url": "http://x/a.png", "width": 64}},
    )
    assert response.status_code == 201
    job_id = response.json()["id"]

    job = wait_for_state(client, "images", job_id, "completed")
    assert job["progress"] == 100
    assert job["result"] == {"url": "http://x/a.png", "width": 64}
    assert job["attempts_made"] == 1

    counts = client.get("/api/v1/queues/images/counts").json()
    assert counts["completed"] == 1
    assert counts["waiting"] == 0

def test_invalid_payload_is_rejected(client):
    response = client.post(
        "/api/v1/queues/images/jobs",
        json={"job_type": "resize", "payload": {"url": "http://x/a.png"}},
    )
    assert response.status_code == 422

def test_invalid_options_are_rejected(client):
    response = client.post(
        "/api/v1/queues/images/jobs",
        json={"job_type": "resize", "payload": {}, "options": {"max_attempts": 0}},
    )
    assert response.status_code == 422

def test_unknown_job_is_404(client):
    response = client.get(f"/api/v1/queues/images/jobs/{uuid4()}")
    assert response.status_code == 404
    response = client.delete(f"/api/v1/queues/images/jobs/{uuid4()}")
    assert response.status_code == 404

def test_delayed_job_listing_and_removal(producer_client):
    response = producer_client.post(
        "/api/v1/queues/reports/jobs",
        json={"job_type": "daily", "payload": {"day": "2024-01-01"}, "options": {"delay": 60, "priority": 3}},
    )
    assert response.status_code == 201
    job_id = response.json()["id"]

    delayed = producer_client.get("/api/v1/queues/reports/jobs", params={"state": "delayed"}).json()
    assert [job["id"] for job in delayed] == [job_id]
    assert delayed[0]["priority"] == 3
    assert producer_client.get("/api/v1/queues/reports/counts").json()["delayed"] == 1

    response = producer_client.delete(f"/api/v1/queues/reports/jobs/{job_id}")
    assert response.status_code == 204
    response = producer_client.get(f"/api/v1/queues/reports/jobs/{job_id}")
    assert response.status_code == 404

def test_metrics_endpoint(client):
    client.post(
        "/api/v1/queues/images/jobs",
        json={"job_type": "resize", "payload": {"url": "http://x/b.png", "width": 32}},
    )
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "jobqueue_enqueued_total" in response.text

def test_store_unavailable_is_503(tmp_path):
    registry = QueueRegistry(
        f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'jobs.db'}",
        create_tables=False,
    )
    with TestClient(create_app(registry, run_workers=False)) as client:
        response = client.post("/api/v1/queues/images/jobs", json={"job_type": "resize", "payload": {}})
        assert response.status_code == 503
        response = client.get("/api/v1/queues/images/counts")
        assert response.status_code == 503

def test_reading_unknown_queues_registers_nothing(producer_client):
    registry = producer_client.app.state.registry

    for n in range(5):
        response = producer_client.get(f"/api/v1/queues/unknown-{n}/counts")
        assert response.status_code == 200
        assert response.json()["waiting"] == 0

    assert registry.queue_names() == []
