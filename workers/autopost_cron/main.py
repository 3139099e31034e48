from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from autopost_cron.core.config import Settings, get_settings
from autopost_cron.core.telemetry import configure_cron_logging, setup_cron_telemetry, shutdown_cron_telemetry
from autopost_cron.jobs.schedule import TriggerSchedule, next_backoff
from autopost_cron.services.trigger_client import TriggerClient, TriggerError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_trigger(client: TriggerClient, name: str, *, report_failures: bool) -> bool:
    """Fire one trigger; on failure forward the error to the report endpoint."""
    with tracer.start_as_current_span("trigger.cycle") as span:
        span.set_attribute("trigger.name", name)
        try:
            if name == "dispatch":
                result = await client.dispatch()
                logger.info(
                    "dispatch processed=%s sent=%s retry_scheduled=%s failed=%s needs_user_action=%s",
                    result.get("processed"),
                    result.get("sent"),
                    result.get("retry_scheduled"),
                    result.get("failed"),
                    result.get("needs_user_action"),
                )
            else:
                result = await client.monitor()
                logger.info("monitor anomalies=%s", result.get("anomalies"))
            return True
        except TriggerError as exc:
            span.set_attribute("trigger.status_code", exc.status_code)
            logger.warning("%s trigger failed status=%s url=%s", name, exc.status_code, exc.url)
            if report_failures:
                await _report(client, exc)
            return False


async def _report(client: TriggerClient, exc: TriggerError) -> None:
    try:
        await client.report_failure(status_code=exc.status_code, url=exc.url, response_text=exc.response_text)
    except TriggerError as report_exc:
        logger.error("failure report was not accepted status=%s", report_exc.status_code)


async def run_cron(settings: Settings | None = None, *, client: TriggerClient | None = None) -> None:
    settings = settings or get_settings()
    configure_cron_logging(settings)
    telemetry = setup_cron_telemetry(settings)
    client = client or TriggerClient(
        base_url=settings.api_base_url,
        cron_secret=settings.cron_secret,
        timeout_seconds=settings.request_timeout_seconds,
    )
    schedule = TriggerSchedule(
        intervals={
            "dispatch": settings.dispatch_interval_seconds,
            "monitor": settings.monitor_interval_seconds,
        }
    )
    backoff = 0.0

    try:
        while True:
            try:
                now = time.monotonic()
                healthy = True
                for name in schedule.due(now):
                    ok = await run_trigger(client, name, report_failures=settings.report_failures)
                    schedule.mark(name, now)
                    healthy = healthy and ok

                if healthy:
                    backoff = 0.0
                    await asyncio.sleep(max(1.0, schedule.next_wait(time.monotonic())))
                    continue

                backoff = _next_backoff(backoff, settings)
                logger.info("trigger cycle unhealthy; sleeping %.1fs", backoff)
            except Exception as exc:
                backoff = _next_backoff(backoff, settings)
                logger.exception("trigger iteration failed: %s; retry in %.1fs", exc, backoff)
            await asyncio.sleep(backoff)
    finally:
        shutdown_cron_telemetry(telemetry)


def _next_backoff(current: float, settings: Settings) -> float:
    return next_backoff(
        current,
        base=min(settings.dispatch_interval_seconds, settings.max_backoff_seconds),
        ceiling=settings.max_backoff_seconds,
        jitter=random.uniform(0.0, 0.5),
    )


if __name__ == "__main__":
    asyncio.run(run_cron())
