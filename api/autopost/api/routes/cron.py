from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status

from autopost.api.errors import store_http_error
from autopost.core.config import Settings, get_settings
from autopost.core.security import require_trigger_secret
from autopost.dependencies import get_alert_deduper, get_anomaly_monitor, get_dispatch_engine
from autopost.schemas.cron import AlertDeliveryOut, DispatchRunOut, MonitorRunOut, ReportOut, TriggerFailureReport
from autopost.services.alerts import AlertDeduper
from autopost.services.dispatch import DispatchEngine
from autopost.services.monitor import AnomalyMonitor, report_trigger_failure
from autopost.services.repository import StoreError

router = APIRouter()


@router.api_route("/dispatch", methods=["GET", "POST"], response_model=DispatchRunOut)
async def run_dispatch(
    principal=Depends(require_trigger_secret),
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> DispatchRunOut:
    try:
        principal.require_scopes({"dispatch:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        summary = await engine.run_once()
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return DispatchRunOut.from_summary(summary)


@router.api_route("/monitor", methods=["GET", "POST"], response_model=MonitorRunOut)
async def run_monitor(
    principal=Depends(require_trigger_secret),
    monitor: AnomalyMonitor = Depends(get_anomaly_monitor),
) -> MonitorRunOut:
    try:
        principal.require_scopes({"monitor:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    report = await monitor.run_once()
    return MonitorRunOut.from_report(report)


@router.post("/report", response_model=ReportOut)
async def report_failure(
    payload: TriggerFailureReport,
    principal=Depends(require_trigger_secret),
    deduper: AlertDeduper = Depends(get_alert_deduper),
    settings: Settings = Depends(get_settings),
) -> ReportOut:
    try:
        principal.require_scopes({"monitor:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    delivery = await report_trigger_failure(
        deduper,
        status_code=payload.status,
        url=payload.url,
        response_text=payload.response_text,
        window=timedelta(minutes=settings.alert_dedupe_report_minutes),
        subject_prefix=settings.alert_subject_prefix,
    )
    return ReportOut(alert=AlertDeliveryOut.from_delivery(delivery))
