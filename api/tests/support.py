from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from autopost.services.credentials import AppCredentials, CredentialResolver
from autopost.services.dispatch import DispatchEngine, RetryPolicy
from autopost.services.models import Job, ProviderConnection
from autopost.services.platforms import ManualAssistPlatform, PlatformRegistry, PostOutcome
from autopost.services.store import InMemoryJobStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TOKEN_URL = "https://api.x.test/2/oauth2/token"
OWNER = "user-1"


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class ScriptedPlatform:
    """Automated platform double that replays queued outcomes and records each post."""

    tag = "x"

    def __init__(self, *outcomes: PostOutcome | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str | None, str]] = []

    async def post(self, connection: ProviderConnection, text: str) -> PostOutcome:
        self.calls.append((connection.access_token, text))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def mock_client(handler: Any) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def build_engine(
    store: InMemoryJobStore,
    platform: ScriptedPlatform,
    *,
    clock: FakeClock,
    token_client: httpx.AsyncClient | None = None,
    max_attempts: int = 3,
) -> DispatchEngine:
    resolver = CredentialResolver(
        store,
        token_urls={"x": TOKEN_URL},
        app_credentials={"x": AppCredentials("app-client", None)},
        clock=clock,
        client=token_client,
    )
    registry = PlatformRegistry([platform, ManualAssistPlatform(tag="threads", display_name="Threads")])
    return DispatchEngine(
        store,
        resolver,
        registry,
        retry_policy=RetryPolicy(max_attempts=max_attempts, delay=timedelta(minutes=5)),
        clock=clock,
    )


def connect(
    store: InMemoryJobStore,
    *,
    access_token: str | None = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_at: datetime | None = None,
    owner_id: str = OWNER,
) -> None:
    store.seed_connection(
        ProviderConnection(
            owner_id=owner_id,
            platform="x",
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
    )


def seed_due(store: InMemoryJobStore, clock: FakeClock, *, platform: str = "x", **extra: Any) -> Job:
    row: dict[str, Any] = {
        "owner_id": OWNER,
        "platform": platform,
        "text": "hello from the scheduler",
        "run_at": clock.now - timedelta(seconds=1),
        "attempts": 0,
        "created_at": clock.now - timedelta(hours=1),
        "updated_at": clock.now - timedelta(hours=1),
    }
    row.update(extra)
    return store.seed_job(**row)


class RecordingSink:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[tuple[str, str]] = []
        self.error = error

    async def send(self, subject: str, body: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((subject, body))
