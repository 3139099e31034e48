from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from autopost.services.alerts import AlertDeduper, AlertSinkError, ResendAlertSink, alert_signature
from autopost.services.repository import StoreUnavailableError
from autopost.services.store import InMemoryJobStore
from support import FakeClock, RecordingSink, mock_client

WINDOW = timedelta(minutes=60)


def _dispatch(deduper: AlertDeduper, body: str = "=== stale (1) ===\n- id=1"):
    return asyncio.run(deduper.dispatch(kind="monitor", subject="[autopost] Monitor alert (1)", body=body, window=WINDOW))


def test_signature_is_stable_and_scoped_by_kind() -> None:
    assert alert_signature("monitor", "body") == alert_signature("monitor", "body\n")
    assert alert_signature("monitor", "body") != alert_signature("report", "body")
    assert alert_signature("monitor", "body").startswith("monitor:")


def test_repeat_alert_is_suppressed_within_window(store: InMemoryJobStore, clock: FakeClock) -> None:
    sink = RecordingSink()
    deduper = AlertDeduper(store, sink, clock=clock)

    first = _dispatch(deduper)
    clock.advance(minutes=1)
    second = _dispatch(deduper)

    assert first.sent and first.delivered
    assert second.suppressed and not second.delivered
    assert len(sink.sent) == 1
    record = store.alerts[first.signature]
    assert record.sent_count == 2
    assert record.last_sent_at == clock.now - timedelta(minutes=1)


def test_suppressed_occurrences_do_not_extend_the_window(store: InMemoryJobStore, clock: FakeClock) -> None:
    sink = RecordingSink()
    deduper = AlertDeduper(store, sink, clock=clock)

    _dispatch(deduper)
    clock.advance(minutes=50)
    assert _dispatch(deduper).suppressed
    clock.advance(minutes=11)
    assert _dispatch(deduper).sent

    assert len(sink.sent) == 2


def test_different_content_is_forwarded(store: InMemoryJobStore, clock: FakeClock) -> None:
    sink = RecordingSink()
    deduper = AlertDeduper(store, sink, clock=clock)

    _dispatch(deduper, body="one")
    _dispatch(deduper, body="two")

    assert [body for _, body in sink.sent] == ["one", "two"]


def test_unreadable_dedupe_table_fails_open(clock: FakeClock) -> None:
    class UnreadableStore(InMemoryJobStore):
        async def get_alert_record(self, signature):
            raise StoreUnavailableError("dedupe table unavailable")

    sink = RecordingSink()
    deduper = AlertDeduper(UnreadableStore(), sink, clock=clock)

    assert _dispatch(deduper).sent
    assert _dispatch(deduper).sent
    assert len(sink.sent) == 2


def test_sink_failure_is_reported_not_raised(store: InMemoryJobStore, clock: FakeClock) -> None:
    deduper = AlertDeduper(store, RecordingSink(error=AlertSinkError("smtp down")), clock=clock)

    delivery = _dispatch(deduper)

    assert delivery.sent
    assert not delivery.delivered
    assert delivery.reason == "sink_failed"


def test_resend_sink_posts_email_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "email-1"})

    sink = ResendAlertSink(
        api_key="re_test",
        api_url="https://api.resend.test/emails",
        from_email="alerts@example.com",
        to_email="ops@example.com",
        client=mock_client(handler),
    )
    asyncio.run(sink.send("subject", "body"))

    assert seen[0].headers["Authorization"] == "Bearer re_test"
    assert json.loads(seen[0].content) == {
        "from": "alerts@example.com",
        "to": ["ops@example.com"],
        "subject": "subject",
        "text": "body",
    }


def test_resend_sink_raises_on_error_status() -> None:
    sink = ResendAlertSink(
        api_key="re_test",
        api_url="https://api.resend.test/emails",
        from_email="alerts@example.com",
        to_email="ops@example.com",
        client=mock_client(lambda request: httpx.Response(500, text="boom")),
    )

    with pytest.raises(AlertSinkError):
        asyncio.run(sink.send("subject", "body"))
