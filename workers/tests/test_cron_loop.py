from __future__ import annotations

import asyncio
from typing import Any

import pytest

import autopost_cron.main as cron_main
from autopost_cron.core.config import Settings


class _StopLoop(BaseException):
    pass


class FlakyClient:
    def __init__(self, *dispatch_errors: Exception) -> None:
        self.dispatch_errors = list(dispatch_errors)
        self.calls: list[str] = []

    async def dispatch(self) -> dict[str, Any]:
        self.calls.append("dispatch")
        if self.dispatch_errors:
            raise self.dispatch_errors.pop(0)
        return {"processed": 0, "sent": 0}

    async def monitor(self) -> dict[str, Any]:
        self.calls.append("monitor")
        return {"anomalies": 0}

    async def report_failure(self, **_: Any) -> dict[str, Any]:
        self.calls.append("report")
        return {"ok": True}


def _settings() -> Settings:
    return Settings(
        otel_enabled=False,
        otel_log_correlation=False,
        dispatch_interval_seconds=60.0,
        monitor_interval_seconds=900.0,
        max_backoff_seconds=300.0,
    )


def _stop_after(monkeypatch: pytest.MonkeyPatch, count: int) -> list[float]:
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) >= count:
            raise _StopLoop()

    monkeypatch.setattr(cron_main.asyncio, "sleep", fake_sleep)
    return sleeps


def test_loop_survives_unexpected_exception(monkeypatch: pytest.MonkeyPatch) -> None:
    client = FlakyClient(RuntimeError("socket closed unexpectedly"))
    sleeps = _stop_after(monkeypatch, 2)

    with pytest.raises(_StopLoop):
        asyncio.run(cron_main.run_cron(_settings(), client=client))

    assert client.calls == ["dispatch", "dispatch", "monitor"]
    assert 120.0 <= sleeps[0] <= 150.0
    assert sleeps[1] >= 1.0


def test_backoff_grows_while_iterations_keep_failing(monkeypatch: pytest.MonkeyPatch) -> None:
    client = FlakyClient(*(RuntimeError(f"failure {n}") for n in range(3)))
    sleeps = _stop_after(monkeypatch, 3)

    with pytest.raises(_StopLoop):
        asyncio.run(cron_main.run_cron(_settings(), client=client))

    assert client.calls == ["dispatch", "dispatch", "dispatch"]
    assert sleeps[0] < sleeps[1] <= 300.0
    assert sleeps[2] == 300.0
