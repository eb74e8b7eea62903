#!/usr/bin/env python3
"""End-to-end tests of the push and collection endpoints."""
import asyncio
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from aggregation_gateway.config import Config, ServerConfig
from aggregation_gateway.main import build_gateway

from conftest import ManualScheduler


@pytest.fixture
def scheduler():
    return ManualScheduler(first_fire=1_700_000_000, step=300)


@pytest.fixture
def gateway(scheduler):
    config = Config(server=ServerConfig(cors_origin="https://example.org"))
    return build_gateway(config, scheduler)


@pytest.fixture
def client(gateway):
    return TestClient(gateway.app)


def push(client, body, path="/metrics/"):
    return client.post(path, content=body)


def test_push_then_collect_sums_counters(client, scheduler):
    first = push(client, '# TYPE requests_total counter\nrequests_total{path="/"} 3\n')
    assert first.status_code == 200
    assert first.json() == {"nextResetTimestampSec": scheduler.next_fire_time() + 30}
    assert first.headers["access-control-allow-origin"] == "https://example.org"

    push(client, '# TYPE requests_total counter\nrequests_total{path="/"} 4\n')

    collected = client.get("/metrics")
    assert collected.status_code == 200
    assert collected.headers["content-type"].startswith("text/plain")
    assert 'requests_total{path="/"} 7.0' in collected.text


def test_type_mismatch_rejected_and_aggregate_kept(client):
    push(client, '# TYPE requests_total counter\nrequests_total{path="/"} 3\n')
    push(client, '# TYPE requests_total counter\nrequests_total{path="/"} 4\n')

    rejected = push(client, '# TYPE requests_total gauge\nrequests_total{path="/"} 1\n')

    assert rejected.status_code == 400
    assert "type counter != gauge" in rejected.text
    assert rejected.headers["access-control-allow-origin"] == "https://example.org"
    assert 'requests_total{path="/"} 7.0' in client.get("/metrics").text


def test_duplicate_series_rejected(client):
    response = push(client, '# TYPE up gauge\nup{job="a"} 1\nup{job="a"} 2\n')

    assert response.status_code == 400
    assert "Duplicate labels" in response.text
    assert "up" not in client.get("/metrics").text


def test_malformed_payload_rejected(client):
    response = push(client, "# TYPE up gauge\nup not_a_number\n")
    assert response.status_code == 400


def test_push_path_accepts_subpaths_and_put(client):
    assert push(client, "# TYPE up gauge\nup 1\n", path="/metrics/job/batch").status_code == 200
    assert client.put("/metrics/", content="# TYPE up gauge\nup 1\n").status_code == 200
    assert "up 2.0" in client.get("/metrics").text


def test_tick_resets_collection(client, scheduler):
    push(client, '# TYPE requests_total counter\nrequests_total{path="/"} 3\n')
    before = push(client, "# TYPE up gauge\nup 1\n").json()["nextResetTimestampSec"]

    scheduler.fire()

    assert "requests_total" not in client.get("/metrics").text
    after = push(client, '# TYPE requests_total counter\nrequests_total{path="/"} 4\n').json()
    assert after["nextResetTimestampSec"] > before
    assert 'requests_total{path="/"} 4.0' in client.get("/metrics").text


def test_status_and_self_metrics(client, scheduler):
    push(client, '# TYPE requests_total counter\nrequests_total{path="/"} 3\n')
    push(client, '# TYPE requests_total gauge\nrequests_total 3\n')
    scheduler.fire()

    status = client.get("/status").json()
    assert status["families"] == 0
    assert status["resets"] == 1
    assert status["next_reset_timestamp"] == scheduler.next_fire_time()

    text = client.get("/-/metrics").text
    assert "gateway_pushes_total 1.0" in text
    assert 'gateway_push_errors_total{reason="TypeMismatchError"} 1.0' in text
    assert "gateway_resets_total 1.0" in text


def test_healthz(client):
    assert client.get("/healthz").json()["status"] == "healthy"


def test_counter_without_suffix_round_trips(client):
    assert push(client, "# TYPE requests counter\nrequests 3\n").status_code == 200
    assert push(client, "# TYPE requests counter\nrequests 4\n").status_code == 200

    text = client.get("/metrics").text
    assert "# TYPE requests counter" in text
    assert "requests 7.0" in text
    assert "requests_total" not in text

    response = push(client, "# TYPE requests gauge\nrequests 1\n")
    assert response.status_code == 400
    assert "type counter != gauge" in response.text


def test_non_integral_histogram_count_rejected(client):
    response = push(
        client,
        "# TYPE latency_seconds histogram\n"
        'latency_seconds_bucket{le="+Inf"} +Inf\n'
        "latency_seconds_sum 1\n",
    )
    assert response.status_code == 400
    assert "latency_seconds" not in client.get("/metrics").text


def test_status_waits_for_store_without_blocking_other_requests(gateway):
    held = threading.Event()
    release = threading.Event()

    def hold_write_lock():
        with gateway.store._lock.write():
            held.set()
            release.wait(5)

    holder = threading.Thread(target=hold_write_lock)
    holder.start()
    assert held.wait(5)

    async def requests_while_locked():
        transport = httpx.ASGITransport(app=gateway.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            started = time.monotonic()
            status = asyncio.create_task(client.get("/status"))
            await asyncio.sleep(0.05)
            health = await client.get("/healthz")
            elapsed = time.monotonic() - started
            release.set()
            return health, elapsed, await status

    try:
        health, elapsed, status = asyncio.run(requests_while_locked())
    finally:
        release.set()
        holder.join()

    assert health.status_code == 200
    assert elapsed < 1
    assert status.status_code == 200
    assert status.json()["families"] == 0
