from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

import autopost.core.security as security
from autopost.core.config import get_settings
from autopost.dependencies import get_clock, get_dispatch_engine
from autopost.main import app
from autopost.services.platforms import Sent
from autopost.services.repository import get_store
from autopost.services.store import InMemoryJobStore
from support import OWNER, FakeClock, ScriptedPlatform, build_engine, connect, seed_due

AUTH = {"Authorization": "Bearer user-token"}


@pytest.fixture
def api_client(store: InMemoryJobStore, clock: FakeClock) -> TestClient:
    os.environ["AP_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["AP_SUPABASE_ANON_KEY"] = "anon-key"
    os.environ["AP_ADMIN_EMAILS"] = "Ops@Example.com"
    get_settings.cache_clear()

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for name in ("AP_SUPABASE_URL", "AP_SUPABASE_ANON_KEY", "AP_ADMIN_EMAILS"):
        os.environ.pop(name, None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def test_reconnect_bumps_stalled_jobs(
    api_client: TestClient,
    store: InMemoryJobStore,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": OWNER})
    stalled = seed_due(store, clock, status="needs_user_action", attempts=1, last_error="x post failed (401)")
    failed = seed_due(store, clock, status="failed", attempts=3)

    response = api_client.put(
        "/connections/x",
        json={"access_token": "fresh", "refresh_token": "refresh-new", "expires_in": 7200, "scopes": ["tweet.write"]},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["connected"] is True
    assert body["bumped_jobs"] == 1
    assert body["scopes"] == ["tweet.write"]

    bumped = store.jobs[stalled.id]
    assert bumped["status"] == "pending"
    assert bumped["attempts"] == 0
    assert bumped["last_error"] is None
    assert bumped["run_at"] == clock.now + timedelta(seconds=30)
    assert store.jobs[failed.id]["status"] == "failed"
    assert store.connections[(OWNER, "x")].expires_at == clock.now + timedelta(hours=2)


def test_disconnect_clears_tokens(
    api_client: TestClient,
    store: InMemoryJobStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": OWNER})
    connect(store)

    response = api_client.delete("/connections/x", headers=AUTH)
    status_response = api_client.get("/connections/x", headers=AUTH)

    assert response.status_code == 200
    assert status_response.json()["connected"] is False
    assert store.connections[(OWNER, "x")].access_token is None
    assert store.connections[(OWNER, "x")].refresh_token is None


def test_manual_platforms_have_no_connection(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": OWNER})

    assert api_client.get("/connections/threads", headers=AUTH).status_code == 404


def test_run_now_requires_admin(api_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": OWNER, "email": "writer@example.com"})

    assert api_client.post("/admin/run-now", headers=AUTH).status_code == 403


def test_run_now_dispatches_for_admin_email(
    api_client: TestClient,
    store: InMemoryJobStore,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_supabase_user(monkeypatch, {"id": "admin-1", "email": "ops@example.com"})
    connect(store)
    job = seed_due(store, clock)
    platform = ScriptedPlatform(Sent("321"))
    app.dependency_overrides[get_dispatch_engine] = lambda: build_engine(store, platform, clock=clock)

    response = api_client.post("/admin/run-now", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["sent"] == 1
    assert store.jobs[job.id]["status"] == "sent"
