from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from autopost.core.config import get_settings
from autopost.services.models import (
    CANCELLABLE_STATUSES,
    COMPLETABLE_STATUSES,
    JOB_STATUSES,
    REAUTH_STATUSES,
    AlertDedupeRecord,
    Job,
    ProviderConnection,
    connection_from_row,
    job_from_row,
    truncate_error,
)

MEMORY_DATABASE_URL = "memory://"
OUTCOME_FIELDS = frozenset({"status", "attempts", "last_error", "external_post_id", "run_at"})
QUERY_ORDER_COLUMNS = frozenset({"run_at", "updated_at"})
ALERT_BODY_MAX_LENGTH = 2000

_JOB_COLUMNS = """
  id::text as id,
  owner_id,
  group_id::text as group_id,
  draft_id,
  platform,
  text,
  run_at,
  status,
  attempts,
  last_error,
  external_post_id,
  created_at,
  updated_at
"""

_CONNECTION_COLUMNS = """
  owner_id,
  platform,
  access_token,
  refresh_token,
  expires_at,
  client_id,
  client_secret_enc,
  scopes,
  updated_at
"""


class StoreError(Exception):
    """Base store error."""


class StoreUnavailableError(StoreError):
    """Raised when the database is unreachable or a query fails at the I/O level."""


class StoreConfigurationError(StoreError):
    """Raised when the store has no usable connection settings."""


class StoreNotFoundError(StoreError):
    """Raised when the requested entity does not exist."""


class StoreValidationError(StoreError):
    """Raised when arguments are rejected before touching persistence."""


@dataclass(slots=True)
class NewJob:
    owner_id: str
    platform: str
    text: str
    run_at: datetime
    group_id: str | None = None
    draft_id: str | None = None


class JobStore(Protocol):
    async def select_due_jobs(self, *, platforms: Sequence[str], limit: int, now: datetime) -> list[Job]: ...

    async def claim_job(self, job_id: str, *, now: datetime) -> bool: ...

    async def apply_outcome(self, job_id: str, *, now: datetime, **fields: Any) -> bool: ...

    async def get_job(self, job_id: str) -> Job | None: ...

    async def create_jobs(self, jobs: Sequence[NewJob], *, now: datetime) -> list[Job]: ...

    async def list_owner_jobs(self, owner_id: str, *, status: str | None, limit: int) -> list[Job]: ...

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
    ) -> list[Job]: ...

    async def query_unknown_status_jobs(self, *, known_statuses: Sequence[str], limit: int) -> list[Job]: ...

    async def cancel_jobs(
        self,
        owner_id: str,
        *,
        now: datetime,
        job_id: str | None = None,
        group_id: str | None = None,
        platform: str | None = None,
    ) -> list[Job]: ...

    async def complete_jobs(
        self,
        owner_id: str,
        *,
        now: datetime,
        job_id: str | None = None,
        group_id: str | None = None,
        platform: str | None = None,
    ) -> list[Job]: ...

    async def bump_reauth_jobs(self, owner_id: str, platform: str, *, run_at: datetime, now: datetime) -> int: ...

    async def get_connection(self, owner_id: str, platform: str) -> ProviderConnection | None: ...

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
    ) -> ProviderConnection: ...

    async def update_connection_tokens(
        self,
        owner_id: str,
        platform: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        now: datetime,
    ) -> None: ...

    async def disconnect(self, owner_id: str, platform: str, *, now: datetime) -> bool: ...

    async def get_alert_record(self, signature: str) -> AlertDedupeRecord | None: ...

    async def record_alert_occurrence(
        self,
        signature: str,
        *,
        kind: str,
        forwarded: bool,
        subject: str,
        body: str,
        now: datetime,
    ) -> AlertDedupeRecord: ...

    async def close(self) -> None: ...


def validate_outcome_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - OUTCOME_FIELDS
    if unknown:
        raise StoreValidationError(f"unsupported outcome fields: {sorted(unknown)}")
    status = fields.get("status")
    if status is not None and status not in JOB_STATUSES:
        raise StoreValidationError(f"unknown job status: {status}")
    normalized = dict(fields)
    if isinstance(normalized.get("last_error"), str):
        normalized["last_error"] = truncate_error(normalized["last_error"])
    return normalized


def require_job_selector(job_id: str | None, group_id: str | None) -> None:
    if not job_id and not group_id:
        raise StoreValidationError("id or group_id is required")


class PostgresJobStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def select_due_jobs(self, *, platforms: Sequence[str], limit: int, now: datetime) -> list[Job]:
        rows = await self._fetch(
            f"""
            select {_JOB_COLUMNS}
            from scheduled_posts
            where status = 'pending'
              and platform = any($1::text[])
              and run_at <= $2
            order by run_at asc, created_at asc
            limit $3
            """,
            list(platforms),
            now,
            max(1, limit),
        )
        return [job_from_row(row) for row in rows]

    async def claim_job(self, job_id: str, *, now: datetime) -> bool:
        row = await self._fetchrow(
            """
            update scheduled_posts
            set status = 'running', updated_at = $2
            where id = $1::uuid and status = 'pending'
            returning id::text as id
            """,
            job_id,
            now,
        )
        return row is not None

    async def apply_outcome(self, job_id: str, *, now: datetime, **fields: Any) -> bool:
        normalized = validate_outcome_fields(fields)
        assignments = ["updated_at = $2"]
        values: list[Any] = [job_id, now]
        for column in sorted(normalized):
            values.append(normalized[column])
            assignments.append(f"{column} = ${len(values)}")

        # Rows an operator cancelled or completed mid-dispatch keep their terminal state.
        row = await self._fetchrow(
            f"""
            update scheduled_posts
            set {", ".join(assignments)}
            where id = $1::uuid and status = 'running'
            returning id::text as id
            """,
            *values,
        )
        return row is not None

    async def get_job(self, job_id: str) -> Job | None:
        try:
            row = await self._fetchrow(
                f"select {_JOB_COLUMNS} from scheduled_posts where id = $1::uuid",
                job_id,
            )
        except StoreValidationError:
            return None
        return job_from_row(row) if row else None

    async def create_jobs(self, jobs: Sequence[NewJob], *, now: datetime) -> list[Job]:
        pool = await self._get_pool()
        created: list[Job] = []
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for job in jobs:
                        row = await conn.fetchrow(
                            f"""
                            insert into scheduled_posts (
                              owner_id,
                              group_id,
                              draft_id,
                              platform,
                              text,
                              run_at,
                              status,
                              attempts,
                              created_at,
                              updated_at
                            )
                            values ($1, $2::uuid, $3, $4, $5, $6, 'pending', 0, $7, $7)
                            returning {_JOB_COLUMNS}
                            """,
                            job.owner_id,
                            job.group_id,
                            job.draft_id,
                            job.platform,
                            job.text,
                            job.run_at,
                            now,
                        )
                        created.append(job_from_row(row))
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as exc:
            raise StoreUnavailableError("database unavailable") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreValidationError(str(exc)) from exc
        return created

    async def list_owner_jobs(self, owner_id: str, *, status: str | None, limit: int) -> list[Job]:
        if status is not None and status not in JOB_STATUSES:
            raise StoreValidationError(f"unknown job status: {status}")
        rows = await self._fetch(
            f"""
            select {_JOB_COLUMNS}
            from scheduled_posts
            where owner_id = $1
              and ($2::text is null or status = $2)
            order by run_at desc
            limit $3
            """,
            owner_id,
            status,
            limit,
        )
        return [job_from_row(row) for row in rows]

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
        direction = "desc" if descending else "asc"
        rows = await self._fetch(
            f"""
            select {_JOB_COLUMNS}
            from scheduled_posts
            where status = any($1::text[])
              and ($2::timestamptz is null or run_at <= $2)
              and ($3::timestamptz is null or updated_at <= $3)
              and ($4::timestamptz is null or updated_at >= $4)
            order by {order_by} {direction}, id asc
            limit $5
            """,
            list(statuses),
            run_at_before,
            updated_before,
            updated_after,
            limit,
        )
        return [job_from_row(row) for row in rows]

    async def query_unknown_status_jobs(self, *, known_statuses: Sequence[str], limit: int) -> list[Job]:
        rows = await self._fetch(
            f"""
            select {_JOB_COLUMNS}
            from scheduled_posts
            where not (status = any($1::text[]))
            order by updated_at desc, id asc
            limit $2
            """,
            list(known_statuses),
            limit,
        )
        return [job_from_row(row) for row in rows]

    async def cancel_jobs(
        self,
        owner_id: str,
        *,
        now: datetime,
        job_id: str | None = None,
        group_id: str | None = None,
        platform: str | None = None,
    ) -> list[Job]:
        return await self._transition_owner_jobs(
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
        return await self._transition_owner_jobs(
            owner_id,
            to_status="sent",
            from_statuses=COMPLETABLE_STATUSES,
            clear_error=True,
            now=now,
            job_id=job_id,
            group_id=group_id,
            platform=platform,
        )

    async def _transition_owner_jobs(
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
        rows = await self._fetch(
            f"""
            update scheduled_posts
            set
              status = $1,
              last_error = case when $2::boolean then null else last_error end,
              updated_at = $3
            where owner_id = $4
              and status = any($5::text[])
              and ($6::text is null or platform = $6)
              and (
                ($7::uuid is not null and group_id = $7::uuid)
                or ($7::uuid is null and id = $8::uuid)
              )
            returning {_JOB_COLUMNS}
            """,
            to_status,
            clear_error,
            now,
            owner_id,
            list(from_statuses),
            platform,
            group_id,
            job_id,
        )
        return [job_from_row(row) for row in rows]

    async def bump_reauth_jobs(self, owner_id: str, platform: str, *, run_at: datetime, now: datetime) -> int:
        rows = await self._fetch(
            """
            update scheduled_posts
            set
              status = 'pending',
              attempts = 0,
              last_error = null,
              run_at = $3,
              updated_at = $4
            where owner_id = $1
              and platform = $2
              and status = any($5::text[])
            returning id::text as id
            """,
            owner_id,
            platform,
            run_at,
            now,
            list(REAUTH_STATUSES),
        )
        return len(rows)

    async def get_connection(self, owner_id: str, platform: str) -> ProviderConnection | None:
        row = await self._fetchrow(
            f"""
            select {_CONNECTION_COLUMNS}
            from provider_connections
            where owner_id = $1 and platform = $2
            """,
            owner_id,
            platform,
        )
        return connection_from_row(row) if row else None

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
        row = await self._fetchrow(
            f"""
            insert into provider_connections (
              owner_id,
              platform,
              access_token,
              refresh_token,
              expires_at,
              scopes,
              updated_at
            )
            values ($1, $2, $3, $4, $5, $6::text[], $7)
            on conflict (owner_id, platform) do update
            set
              access_token = excluded.access_token,
              refresh_token = excluded.refresh_token,
              expires_at = excluded.expires_at,
              scopes = excluded.scopes,
              updated_at = excluded.updated_at
            returning {_CONNECTION_COLUMNS}
            """,
            owner_id,
            platform,
            access_token,
            refresh_token,
            expires_at,
            list(scopes),
            now,
        )
        if not row:
            raise StoreUnavailableError("failed to persist provider connection")
        return connection_from_row(row)

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
        result = await self._execute(
            """
            update provider_connections
            set
              access_token = $3,
              refresh_token = $4,
              expires_at = $5,
              updated_at = $6
            where owner_id = $1 and platform = $2
            """,
            owner_id,
            platform,
            access_token,
            refresh_token,
            expires_at,
            now,
        )
        if result.endswith(" 0"):
            raise StoreNotFoundError(f"no {platform} connection for owner {owner_id}")

    async def disconnect(self, owner_id: str, platform: str, *, now: datetime) -> bool:
        row = await self._fetchrow(
            """
            update provider_connections
            set
              access_token = null,
              refresh_token = null,
              expires_at = null,
              updated_at = $3
            where owner_id = $1 and platform = $2
            returning owner_id
            """,
            owner_id,
            platform,
            now,
        )
        return row is not None

    async def get_alert_record(self, signature: str) -> AlertDedupeRecord | None:
        row = await self._fetchrow(
            """
            select signature, kind, last_sent_at, sent_count, last_subject, updated_at
            from alert_dedupe
            where signature = $1
            """,
            signature,
        )
        return self._alert_row_to_record(row) if row else None

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
        # Suppressed occurrences only bump the counter so the window never slides forward.
        row = await self._fetchrow(
            """
            insert into alert_dedupe (
              signature,
              kind,
              last_sent_at,
              sent_count,
              last_subject,
              last_body,
              updated_at
            )
            values ($1, $2, case when $3::boolean then $6::timestamptz else null end, 1, $4, $5, $6::timestamptz)
            on conflict (signature) do update
            set
              sent_count = alert_dedupe.sent_count + 1,
              last_sent_at = case when $3::boolean then excluded.updated_at else alert_dedupe.last_sent_at end,
              last_subject = excluded.last_subject,
              last_body = excluded.last_body,
              updated_at = excluded.updated_at
            returning signature, kind, last_sent_at, sent_count, last_subject, updated_at
            """,
            signature,
            kind,
            forwarded,
            subject,
            body[:ALERT_BODY_MAX_LENGTH],
            now,
        )
        if not row:
            raise StoreUnavailableError("failed to record alert occurrence")
        return self._alert_row_to_record(row)

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            return await pool.fetch(query, *args)
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as exc:
            raise StoreUnavailableError("database unavailable") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreValidationError(str(exc)) from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchrow(query, *args)
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as exc:
            raise StoreUnavailableError("database unavailable") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreValidationError(str(exc)) from exc

    async def _execute(self, query: str, *args: Any) -> str:
        pool = await self._get_pool()
        try:
            return await pool.execute(query, *args)
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as exc:
            raise StoreUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreConfigurationError("AP_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _alert_row_to_record(row: asyncpg.Record) -> AlertDedupeRecord:
        return AlertDedupeRecord(
            signature=row["signature"],
            kind=row["kind"],
            last_sent_at=row["last_sent_at"],
            sent_count=int(row["sent_count"] or 0),
            last_subject=row["last_subject"],
            updated_at=row["updated_at"],
        )


@lru_cache
def get_store() -> JobStore:
    settings = get_settings()
    if settings.database_url == MEMORY_DATABASE_URL:
        from autopost.services.store import InMemoryJobStore

        return InMemoryJobStore()
    return PostgresJobStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
