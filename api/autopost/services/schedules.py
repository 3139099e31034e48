from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from uuid import uuid4

from autopost.services.models import Job, ProviderConnection
from autopost.services.platforms import TEXT_LIMITS
from autopost.services.repository import JobStore, NewJob

logger = logging.getLogger(__name__)


class ScheduleValidationError(Exception):
    """Raised when a compose request cannot become scheduled jobs."""


def validate_post_text(text: str, platforms: Sequence[str]) -> None:
    if not text.strip():
        raise ScheduleValidationError("text is required")
    for tag in platforms:
        limit = TEXT_LIMITS.get(tag)
        if limit is not None and len(text) > limit:
            raise ScheduleValidationError(f"text is too long for {tag} (max {limit})")


def validate_compose(
    *,
    text: str,
    platforms: Sequence[str],
    run_at: datetime,
    now: datetime,
    min_lead: timedelta,
    known_platforms: Sequence[str],
) -> list[str]:
    normalized: list[str] = []
    for platform in platforms:
        tag = platform.strip().lower()
        if tag and tag not in normalized:
            normalized.append(tag)
    if not normalized:
        raise ScheduleValidationError("at least one platform is required")

    unknown = [tag for tag in normalized if tag not in known_platforms]
    if unknown:
        raise ScheduleValidationError(f"unsupported platform(s): {', '.join(unknown)}")

    validate_post_text(text, normalized)

    if run_at.tzinfo is None:
        raise ScheduleValidationError("run_at must include a timezone offset")
    if run_at < now + min_lead:
        raise ScheduleValidationError(f"run_at must be at least {int(min_lead.total_seconds())}s in the future")
    return normalized


async def schedule_post(
    store: JobStore,
    *,
    owner_id: str,
    text: str,
    platforms: Sequence[str],
    run_at: datetime,
    now: datetime,
    min_lead: timedelta,
    known_platforms: Sequence[str],
    draft_id: str | None = None,
) -> list[Job]:
    """Create one pending job per target platform, linked by a shared group id."""
    targets = validate_compose(
        text=text,
        platforms=platforms,
        run_at=run_at,
        now=now,
        min_lead=min_lead,
        known_platforms=known_platforms,
    )
    group_id = str(uuid4())
    jobs = await store.create_jobs(
        [
            NewJob(
                owner_id=owner_id,
                platform=tag,
                text=text,
                run_at=run_at,
                group_id=group_id,
                draft_id=draft_id,
            )
            for tag in targets
        ],
        now=now,
    )
    logger.info("scheduled group_id=%s owner=%s platforms=%s", group_id, owner_id, ",".join(targets))
    return jobs


async def record_reconnection(
    store: JobStore,
    *,
    owner_id: str,
    platform: str,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None,
    scopes: Sequence[str],
    now: datetime,
    bump_delay: timedelta,
) -> tuple[ProviderConnection, int]:
    """Persist a fresh token set and give the owner's stalled jobs another try."""
    connection = await store.save_connection(
        owner_id,
        platform,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        scopes=scopes,
        now=now,
    )
    bumped = await store.bump_reauth_jobs(owner_id, platform, run_at=now + bump_delay, now=now)
    if bumped:
        logger.info("reconnected owner=%s platform=%s bumped_jobs=%s", owner_id, platform, bumped)
    return connection, bumped
