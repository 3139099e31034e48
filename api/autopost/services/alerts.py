from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal, Protocol

import httpx

from autopost.core.clock import Clock, utc_now
from autopost.services.repository import JobStore, StoreError

logger = logging.getLogger(__name__)

AlertKind = Literal["monitor", "report"]
DedupeVerdict = Literal["send", "suppressed"]


class AlertSinkError(Exception):
    """Raised when an alert sink fails to hand the alert to its transport."""


class AlertSink(Protocol):
    async def send(self, subject: str, body: str) -> None: ...


class LoggingAlertSink:
    """Fallback sink used when no mail transport is configured."""

    async def send(self, subject: str, body: str) -> None:
        logger.warning("alert (no mail transport configured) subject=%s\n%s", subject, body)


class ResendAlertSink:
    def __init__(
        self,
        *,
        api_key: str,
        api_url: str,
        from_email: str,
        to_email: str,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url
        self.from_email = from_email
        self.to_email = to_email
        self.timeout_seconds = timeout_seconds
        self.headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client

    async def send(self, subject: str, body: str) -> None:
        payload = {
            "from": self.from_email,
            "to": [self.to_email],
            "subject": subject,
            "text": body,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                    response = await temp_client.post(self.api_url, json=payload, headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AlertSinkError(f"alert email delivery failed: {exc}") from exc


def alert_signature(kind: str, content: str) -> str:
    digest = hashlib.sha256(f"{kind}\n{content.strip()}".encode("utf-8")).hexdigest()
    return f"{kind}:{digest}"


@dataclass(slots=True, frozen=True)
class AlertDelivery:
    signature: str
    verdict: DedupeVerdict
    delivered: bool
    reason: str | None = None

    @property
    def sent(self) -> bool:
        return self.verdict == "send"

    @property
    def suppressed(self) -> bool:
        return self.verdict == "suppressed"


class AlertDeduper:
    """Forwards an alert at most once per suppression window for a given signature.

    Bookkeeping is advisory: if the dedupe table cannot be read the alert is sent
    anyway, and if it cannot be written the decision already made stands.
    """

    def __init__(self, store: JobStore, sink: AlertSink, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.sink = sink
        self.clock = clock

    async def should_send(
        self,
        signature: str,
        window: timedelta,
        *,
        kind: str,
        subject: str,
        body: str,
    ) -> DedupeVerdict:
        now = self.clock()
        try:
            record = await self.store.get_alert_record(signature)
        except StoreError as exc:
            logger.warning("alert dedupe read failed signature=%s: %s; failing open", signature, exc)
            return "send"

        within_window = (
            record is not None
            and record.last_sent_at is not None
            and now - record.last_sent_at < window
        )
        verdict: DedupeVerdict = "suppressed" if within_window else "send"
        try:
            await self.store.record_alert_occurrence(
                signature,
                kind=kind,
                forwarded=verdict == "send",
                subject=subject,
                body=body,
                now=now,
            )
        except StoreError as exc:
            logger.warning("alert dedupe write failed signature=%s: %s", signature, exc)
        return verdict

    async def dispatch(self, *, kind: AlertKind, subject: str, body: str, window: timedelta) -> AlertDelivery:
        signature = alert_signature(kind, body)
        verdict = await self.should_send(signature, window, kind=kind, subject=subject, body=body)
        if verdict == "suppressed":
            logger.info("alert suppressed kind=%s signature=%s", kind, signature)
            return AlertDelivery(signature=signature, verdict=verdict, delivered=False, reason="within_window")

        try:
            await self.sink.send(subject, body)
        except AlertSinkError as exc:
            logger.error("alert sink failed kind=%s signature=%s: %s", kind, signature, exc)
            return AlertDelivery(signature=signature, verdict=verdict, delivered=False, reason="sink_failed")

        logger.info("alert forwarded kind=%s signature=%s", kind, signature)
        return AlertDelivery(signature=signature, verdict=verdict, delivered=True)
