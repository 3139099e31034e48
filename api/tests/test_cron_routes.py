from __future__ import annotations

import os
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from autopost.core.config import get_settings
from autopost.dependencies import get_alert_sink, get_clock, get_platform_registry
from autopost.main import app
from autopost.services.platforms import ManualAssistPlatform, PlatformRegistry, Sent
from autopost.services.repository import StoreUnavailableError, get_store
from autopost.services.store import InMemoryJobStore
from support import FakeClock, RecordingSink, ScriptedPlatform, connect, seed_due

SECRET = "cron-secret-for-tests"
AUTH = {"Authorization": f"Bearer {SECRET}"}


@pytest.fixture
def cron_env(store: InMemoryJobStore, clock: FakeClock):
    os.environ["AP_CRON_SECRET"] = SECRET
    get_settings.cache_clear()

    platform = ScriptedPlatform(Sent("900"))
    sink = RecordingSink()
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_alert_sink] = lambda: sink
    app.dependency_overrides[get_platform_registry] = lambda: PlatformRegistry(
        [platform, ManualAssistPlatform(tag="threads", display_name="Threads")]
    )

    with TestClient(app) as client:
        yield client, platform, sink

    app.dependency_overrides.clear()
    os.environ.pop("AP_CRON_SECRET", None)
    get_settings.cache_clear()


def test_dispatch_requires_trigger_secret(cron_env) -> None:
    client, platform, _ = cron_env

    assert client.get("/cron/dispatch").status_code == 401
    assert client.get("/cron/dispatch", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert platform.calls == []


def test_dispatch_fails_closed_when_secret_unset(cron_env) -> None:
    client, _, _ = cron_env
    os.environ.pop("AP_CRON_SECRET", None)
    get_settings.cache_clear()

    response = client.post("/cron/dispatch", headers=AUTH)

    assert response.status_code == 500


def test_dispatch_runs_one_cycle(cron_env, store: InMemoryJobStore, clock: FakeClock) -> None:
    client, platform, _ = cron_env
    connect(store)
    job = seed_due(store, clock)

    response = client.get("/cron/dispatch", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["sent"] == 1
    assert body["results"] == [
        {"id": job.id, "platform": "x", "action": "sent", "external_post_id": "900", "error": None}
    ]
    assert store.jobs[job.id]["status"] == "sent"


def test_dispatch_with_nothing_due_is_ok(cron_env) -> None:
    client, _, _ = cron_env

    response = client.post("/cron/dispatch", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["processed"] == 0


def test_dispatch_store_outage_is_503(cron_env) -> None:
    client, _, _ = cron_env

    class DownStore(InMemoryJobStore):
        async def select_due_jobs(self, **kwargs):
            raise StoreUnavailableError("database unavailable")

    app.dependency_overrides[get_store] = lambda: DownStore()

    response = client.get("/cron/dispatch", headers=AUTH)

    assert response.status_code == 503


def test_monitor_forwards_then_suppresses(cron_env, store: InMemoryJobStore, clock: FakeClock) -> None:
    client, _, sink = cron_env
    seed_due(store, clock, run_at=clock.now - timedelta(minutes=15))

    first = client.get("/cron/monitor", headers=AUTH).json()
    clock.advance(minutes=1)
    second = client.post("/cron/monitor", headers=AUTH).json()

    assert first["anomalies"] == 1
    assert first["counts"] == {"stale_pending": 1}
    assert first["alert"]["sent"] is True
    assert second["alert"]["suppressed"] is True
    assert len(sink.sent) == 1


def test_monitor_without_anomalies_sends_nothing(cron_env) -> None:
    client, _, sink = cron_env

    body = client.get("/cron/monitor", headers=AUTH).json()

    assert body["anomalies"] == 0
    assert body["alert"] is None
    assert sink.sent == []


def test_report_accepts_camel_case_payload(cron_env) -> None:
    client, _, sink = cron_env
    payload = {"status": 502, "url": "https://autopost.example/cron/dispatch", "responseText": "bad gateway"}

    first = client.post("/cron/report", json=payload, headers=AUTH)
    second = client.post("/cron/report", json=payload, headers=AUTH)

    assert first.status_code == 200
    assert first.json()["alert"]["sent"] is True
    assert second.json()["alert"]["suppressed"] is True
    assert len(sink.sent) == 1
    assert "bad gateway" in sink.sent[0][1]


def test_report_requires_trigger_secret(cron_env) -> None:
    client, _, _ = cron_env

    response = client.post("/cron/report", json={"status": 500, "url": "https://x"})

    assert response.status_code == 401
