"""FastAPI dependency factories wiring settings into the dispatch components."""

from __future__ import annotations

from datetime import timedelta

from fastapi import Depends

from autopost.core.clock import Clock, utc_now
from autopost.core.config import Settings, get_settings
from autopost.core.crypto import build_cipher
from autopost.services.alerts import AlertDeduper, AlertSink, LoggingAlertSink, ResendAlertSink
from autopost.services.credentials import AppCredentials, CredentialResolver
from autopost.services.dispatch import DispatchEngine, RetryPolicy
from autopost.services.monitor import AnomalyMonitor, MonitorThresholds
from autopost.services.platforms import PlatformRegistry, build_platform_registry
from autopost.services.repository import JobStore, get_store


def get_clock() -> Clock:
    return utc_now


def get_platform_registry(settings: Settings = Depends(get_settings)) -> PlatformRegistry:
    return build_platform_registry(
        x_api_base_url=settings.x_api_base_url,
        timeout_seconds=settings.platform_request_timeout_seconds,
    )


def get_credential_resolver(
    settings: Settings = Depends(get_settings),
    store: JobStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> CredentialResolver:
    return CredentialResolver(
        store,
        token_urls={"x": settings.x_token_url},
        app_credentials={"x": AppCredentials(settings.x_client_id, settings.x_client_secret)},
        cipher=build_cipher(settings.credential_encryption_key),
        lookahead=timedelta(seconds=settings.token_refresh_lookahead_seconds),
        timeout_seconds=settings.platform_request_timeout_seconds,
        clock=clock,
    )


def get_dispatch_engine(
    settings: Settings = Depends(get_settings),
    store: JobStore = Depends(get_store),
    resolver: CredentialResolver = Depends(get_credential_resolver),
    platforms: PlatformRegistry = Depends(get_platform_registry),
    clock: Clock = Depends(get_clock),
) -> DispatchEngine:
    return DispatchEngine(
        store,
        resolver,
        platforms,
        retry_policy=RetryPolicy(
            max_attempts=max(1, settings.job_max_attempts),
            delay=timedelta(seconds=max(0, settings.job_retry_delay_seconds)),
        ),
        batch_size=settings.dispatch_batch_size,
        clock=clock,
    )


def get_alert_sink(settings: Settings = Depends(get_settings)) -> AlertSink:
    if settings.resend_api_key and settings.alert_from_email and settings.alert_to_email:
        return ResendAlertSink(
            api_key=settings.resend_api_key,
            api_url=settings.resend_api_url,
            from_email=settings.alert_from_email,
            to_email=settings.alert_to_email,
        )
    return LoggingAlertSink()


def get_alert_deduper(
    store: JobStore = Depends(get_store),
    sink: AlertSink = Depends(get_alert_sink),
    clock: Clock = Depends(get_clock),
) -> AlertDeduper:
    return AlertDeduper(store, sink, clock=clock)


def get_anomaly_monitor(
    settings: Settings = Depends(get_settings),
    store: JobStore = Depends(get_store),
    deduper: AlertDeduper = Depends(get_alert_deduper),
    clock: Clock = Depends(get_clock),
) -> AnomalyMonitor:
    return AnomalyMonitor(
        store,
        deduper,
        thresholds=MonitorThresholds(
            stale_pending=timedelta(minutes=settings.monitor_stale_pending_minutes),
            stuck_running=timedelta(minutes=settings.monitor_stuck_running_minutes),
            failure_lookback=timedelta(minutes=settings.monitor_failure_lookback_minutes),
            row_limit=settings.monitor_row_limit,
        ),
        window=timedelta(minutes=settings.alert_dedupe_monitor_minutes),
        subject_prefix=settings.alert_subject_prefix,
        clock=clock,
    )
