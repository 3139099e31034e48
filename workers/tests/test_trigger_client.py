from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from autopost_cron.main import run_trigger
from autopost_cron.services.trigger_client import TriggerClient, TriggerError


def _client(handler) -> TriggerClient:
    return TriggerClient(
        base_url="https://autopost.test/",
        cron_secret="s3cret",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_dispatch_posts_with_bearer_secret() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "processed": 2, "sent": 2})

    result = asyncio.run(_client(handler).dispatch())

    assert result["sent"] == 2
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "https://autopost.test/cron/dispatch"
    assert seen[0].headers["Authorization"] == "Bearer s3cret"


def test_error_status_raises_trigger_error() -> None:
    client = _client(lambda request: httpx.Response(503, text="database unavailable"))

    with pytest.raises(TriggerError) as exc_info:
        asyncio.run(client.monitor())

    assert exc_info.value.status_code == 503
    assert exc_info.value.url == "https://autopost.test/cron/monitor"
    assert exc_info.value.response_text == "database unavailable"


def test_transport_error_becomes_status_zero() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TriggerError) as exc_info:
        asyncio.run(_client(handler).dispatch())

    assert exc_info.value.status_code == 0
    assert "connection refused" in exc_info.value.response_text


def test_failed_trigger_is_reported() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/cron/dispatch":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json={"ok": True})

    ok = asyncio.run(run_trigger(_client(handler), "dispatch", report_failures=True))

    assert ok is False
    assert [request.url.path for request in seen] == ["/cron/dispatch", "/cron/report"]
    assert json.loads(seen[1].content) == {
        "status": 500,
        "url": "https://autopost.test/cron/dispatch",
        "responseText": "boom",
    }


def test_rejected_report_does_not_raise() -> None:
    client = _client(lambda request: httpx.Response(401, text="unauthorized"))

    assert asyncio.run(run_trigger(client, "monitor", report_failures=True)) is False


def test_reporting_can_be_disabled() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(502, text="bad gateway")

    asyncio.run(run_trigger(_client(handler), "dispatch", report_failures=False))

    assert len(seen) == 1


def test_non_json_success_is_reported_as_failure() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/cron/dispatch":
            return httpx.Response(200, text="<html>maintenance</html>")
        return httpx.Response(200, json={"ok": True})

    ok = asyncio.run(run_trigger(_client(handler), "dispatch", report_failures=True))

    assert ok is False
    assert [request.url.path for request in seen] == ["/cron/dispatch", "/cron/report"]
    assert json.loads(seen[1].content) == {
        "status": 200,
        "url": "https://autopost.test/cron/dispatch",
        "responseText": "<html>maintenance</html>",
    }


def test_non_object_json_raises_trigger_error() -> None:
    client = _client(lambda request: httpx.Response(200, json=["not", "an", "object"]))

    with pytest.raises(TriggerError) as exc_info:
        asyncio.run(client.monitor())

    assert exc_info.value.status_code == 200
    assert exc_info.value.url == "https://autopost.test/cron/monitor"
