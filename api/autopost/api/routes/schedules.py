from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from autopost.api.errors import store_http_error
from autopost.core.clock import Clock
from autopost.core.config import Settings, get_settings
from autopost.core.security import get_human_principal
from autopost.dependencies import get_clock, get_platform_registry
from autopost.schemas.schedules import (
    ComposeRequest,
    ComposeResponse,
    JobOut,
    JobSelectorRequest,
    JobStatus,
    JobTransitionResponse,
)
from autopost.services.platforms import PlatformRegistry
from autopost.services.repository import JobStore, StoreError, get_store
from autopost.services.schedules import ScheduleValidationError, schedule_post

router = APIRouter()


def _require(principal, scopes: set[str]) -> None:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("", response_model=ComposeResponse, status_code=status.HTTP_201_CREATED)
async def compose_schedule(
    payload: ComposeRequest,
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_store),
    platforms: PlatformRegistry = Depends(get_platform_registry),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> ComposeResponse:
    _require(principal, {"schedule:write"})

    try:
        jobs = await schedule_post(
            store,
            owner_id=principal.subject,
            text=payload.text,
            platforms=payload.targets(),
            run_at=payload.run_at,
            now=clock(),
            min_lead=timedelta(seconds=settings.schedule_min_lead_seconds),
            known_platforms=platforms.tags(),
            draft_id=payload.draft_id,
        )
    except ScheduleValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return ComposeResponse(
        group_id=jobs[0].group_id if jobs else None,
        jobs=[JobOut.from_job(job) for job in jobs],
    )


@router.get("", response_model=list[JobOut])
async def list_schedules(
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_store),
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[JobOut]:
    _require(principal, {"schedule:read"})

    try:
        jobs = await store.list_owner_jobs(principal.subject, status=status_filter, limit=limit)
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return [JobOut.from_job(job) for job in jobs]


@router.post("/cancel", response_model=JobTransitionResponse)
async def cancel_schedule(
    payload: JobSelectorRequest,
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> JobTransitionResponse:
    _require(principal, {"schedule:write"})

    try:
        jobs = await store.cancel_jobs(
            principal.subject,
            now=clock(),
            job_id=payload.id,
            group_id=payload.group_id,
            platform=payload.platform,
        )
    except StoreError as exc:
        raise store_http_error(exc) from exc

    if not jobs:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no cancellable jobs matched")
    return JobTransitionResponse(updated=len(jobs), jobs=[JobOut.from_job(job) for job in jobs])


@router.post("/complete", response_model=JobTransitionResponse)
async def complete_schedule(
    payload: JobSelectorRequest,
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> JobTransitionResponse:
    """Mark manually published jobs as sent."""
    _require(principal, {"schedule:write"})

    try:
        jobs = await store.complete_jobs(
            principal.subject,
            now=clock(),
            job_id=payload.id,
            group_id=payload.group_id,
            platform=payload.platform,
        )
    except StoreError as exc:
        raise store_http_error(exc) from exc

    if not jobs:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no completable jobs matched")
    return JobTransitionResponse(updated=len(jobs), jobs=[JobOut.from_job(job) for job in jobs])
