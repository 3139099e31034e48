from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from autopost.services.models import (
    CANCELLABLE_STATUSES,
    COMPLETABLE_STATUSES,
    JOB_STATUSES,
    REAUTH_STATUSES,
    AlertDedupeRecord,
    Job,
    ProviderConnection,
    job_from_row,
)
from autopost.services.repository import (
    ALERT_BODY_MAX_LENGTH,
    QUERY_ORDER_COLUMNS,
    NewJob,
    StoreNotFoundError,
    StoreValidationError,
    require_job_selector,
    validate_outcome_fields,
)


class InMemoryJobStore:
    """Process-local store for tests and single-process local runs.

    Rows are kept as plain dicts in storage shape and normalized on the way out, so
    legacy spellings seeded through ``seed_job`` exercise the same boundary as Postgres.
    Every check-and-set runs without awaiting in between, which makes it atomic on one
    event loop.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.connections: dict[tuple[str, str], ProviderConnection] = {}
        self.alerts: dict[str, AlertDedupeRecord] = {}
        self.alert_bodies: dict[str, str] = {}

    def seed_job(self, **row: Any) -> Job:
        row.setdefault("id", str(uuid4()))
        row.setdefault("status", "pending")
        self.jobs[str(row["id"])] = row
        return job_from_row(row)

    def seed_connection(self, connection: ProviderConnection) -> None:
        self.connections[(connection.owner_id, connection.platform)] = connection

    async def close(self) -> None:
        return None

    async def select_due_jobs(self, *, platforms: Sequence[str], limit: int, now: datetime) -> list[Job]:
        wanted = set(platforms)
        due = [
            job
            for job in self._all_jobs()
            if job.status == "pending" and job.platform in wanted and job.run_at <= now
        ]
        due.sort(key=lambda job: job.run_at)
        return due[: max(1, limit)]

    async def claim_job(self, job_id: str, *, now: datetime) -> bool:
        row = self.jobs.get(job_id)
        if row is None or row.get("status") != "pending":
            return False
        row["status"] = "running"
        row["updated_at"] = now
        return True

    async def apply_outcome(self, job_id: str, *, now: datetime, **fields: Any) -> bool:
        normalized = validate_outcome_fields(fields)
        row = self.jobs.get(job_id)
        if row is None or row.get("status") != "running":
            return False
        row.update(normalized)
        row["updated_at"] = now
        return True

    async def get_job(self, job_id: str) -> Job | None:
        row = self.jobs.get(job_id)
        return job_from_row(row) if row else None

    async def create_jobs(self, jobs: Sequence[NewJob], *, now: datetime) -> list[Job]:
        created: list[Job] = []
        for job in jobs:
            created.append(
                self.seed_job(
                    owner_id=job.owner_id,
                    group_id=job.group_id,
                    draft_id=job.draft_id,
                    platform=job.platform,
                    text=job.text,
                    run_at=job.run_at,
                    status="pending",
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        return created

    async def list_owner_jobs(self, owner_id: str, *, status: str | None, limit: int) -> list[Job]:
        if status is not None and status not in JOB_STATUSES:
            raise StoreValidationError(f"unknown job status: {status}")
        rows = [
            job
            for job in self._all_jobs()
            if job.owner_id == owner_id and (status is None or job.status == status)
        ]
        rows.sort(key=lambda job: job.run_at, reverse=True)
        return rows[:limit]

    async def query_jobs(
        self,
        *,
        statuses: Sequence[str],
        limit: int,
        run_at_before: datetime | None = None,
        updated_before: datetime | None = None,
        updated_after: datetime | None = None,
        order_by: str = "run_at",
        descending: bool = False,
    ) -> list[Job]:
        if order_by not in QUERY_ORDER_COLUMNS:
            raise StoreValidationError(f"cannot order jobs by {order_by!r}")
        wanted = set(statuses)
        matched: list[Job] = []
        for job in self._all_jobs():
            if job.status not in wanted:
                continue
            if run_at_before is not None and job.run_at > run_at_before:
                continue
            if updated_before is not None and (job.updated_at is None or job.updated_at > updated_before):
                continue
            if updated_after is not None and (job.updated_at is None or job.updated_at < updated_after):
                continue
            matched.append(job)
        matched.sort(key=lambda job: (getattr(job, order_by) or job.run_at, job.id), reverse=descending)
        return matched[:limit]

    async def query_unknown_status_jobs(self, *, known_statuses: Sequence[str], limit: int) -> list[Job]:
        known = set(known_statuses)
        unknown = [job for job in self._all_jobs() if job.status not in known]
        unknown.sort(key=lambda job: (job.updated_at or job.run_at, job.id), reverse=True)
        return unknown[:limit]

    async def cancel_jobs(
        self,
        owner_id: str,
        *,
        now: datetime,
        job_id: str | None = None,
        group_id: str | None = None,
        platform: str | None = None,
    ) -> list[Job]:
        return self._transition(
            owner_id,
            to_status="cancelled",
            from_statuses=CANCELLABLE_STATUSES,
            clear_error=False,
            now=now,
            job_id=job_id,
            group_id=group_id,
            platform=platform,
        )

    async def complete_jobs(
        self,
        owner_id: str,
        *,
        now: datetime,
        job_id: str | None = None,
        group_id: str | None = None,
        platform: str | None = None,
    ) -> list[Job]:
        return self._transition(
            owner_id,
            to_status="sent",
            from_statuses=COMPLETABLE_STATUSES,
            clear_error=True,
            now=now,
            job_id=job_id,
            group_id=group_id,
            platform=platform,
        )

    async def bump_reauth_jobs(self, owner_id: str, platform: str, *, run_at: datetime, now: datetime) -> int:
        bumped = 0
        for row in self.jobs.values():
            job = job_from_row(row)
            if job.owner_id != owner_id or job.platform != platform or job.status not in REAUTH_STATUSES:
                continue
            row.update(status="pending", attempts=0, last_error=None, run_at=run_at, updated_at=now)
            bumped += 1
        return bumped

    async def get_connection(self, owner_id: str, platform: str) -> ProviderConnection | None:
        connection = self.connections.get((owner_id, platform))
        return replace(connection) if connection else None

    async def save_connection(
        self,
        owner_id: str,
        platform: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        scopes: Sequence[str],
        now: datetime,
    ) -> ProviderConnection:
        existing = self.connections.get((owner_id, platform))
        connection = ProviderConnection(
            owner_id=owner_id,
            platform=platform,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            client_id=existing.client_id if existing else None,
            client_secret_enc=existing.client_secret_enc if existing else None,
            scopes=list(scopes),
            updated_at=now,
        )
        self.connections[(owner_id, platform)] = connection
        return replace(connection)

    async def update_connection_tokens(
        self,
        owner_id: str,
        platform: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        now: datetime,
    ) -> None:
        connection = self.connections.get((owner_id, platform))
        if connection is None:
            raise StoreNotFoundError(f"no {platform} connection for owner {owner_id}")
        connection.access_token = access_token
        connection.refresh_token = refresh_token
        connection.expires_at = expires_at
        connection.updated_at = now

    async def disconnect(self, owner_id: str, platform: str, *, now: datetime) -> bool:
        connection = self.connections.get((owner_id, platform))
        if connection is None:
            return False
        connection.access_token = None
        connection.refresh_token = None
        connection.expires_at = None
        connection.updated_at = now
        return True

    async def get_alert_record(self, signature: str) -> AlertDedupeRecord | None:
        record = self.alerts.get(signature)
        return replace(record) if record else None

    async def record_alert_occurrence(
        self,
        signature: str,
        *,
        kind: str,
        forwarded: bool,
        subject: str,
        body: str,
        now: datetime,
    ) -> AlertDedupeRecord:
        record = self.alerts.get(signature)
        if record is None:
            record = AlertDedupeRecord(signature=signature, kind=kind, last_sent_at=None, sent_count=0)
            self.alerts[signature] = record
        record.sent_count += 1
        if forwarded:
            record.last_sent_at = now
        record.last_subject = subject
        record.updated_at = now
        self.alert_bodies[signature] = body[:ALERT_BODY_MAX_LENGTH]
        return replace(record)

    def _all_jobs(self) -> list[Job]:
        return [job_from_row(row) for row in self.jobs.values()]

    def _transition(
        self,
        owner_id: str,
        *,
        to_status: str,
        from_statuses: Sequence[str],
        clear_error: bool,
        now: datetime,
        job_id: str | None,
        group_id: str | None,
        platform: str | None,
    ) -> list[Job]:
        require_job_selector(job_id, group_id)
        changed: list[Job] = []
        for row in self.jobs.values():
            job = job_from_row(row)
            if job.owner_id != owner_id or job.status not in from_statuses:
                continue
            if platform and job.platform != platform:
                continue
            if group_id:
                if job.group_id != group_id:
                    continue
            elif job.id != job_id:
                continue
            row["status"] = to_status
            row["updated_at"] = now
            if clear_error:
                row["last_error"] = None
            changed.append(job_from_row(row))
        return changed
