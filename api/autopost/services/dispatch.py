from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

import httpx
from opentelemetry import trace

from autopost.core.clock import Clock, utc_now
from autopost.services.credentials import CredentialResolver, RefreshFailed
from autopost.services.models import Job, ProviderConnection, truncate_error
from autopost.services.platforms import (
    AuthError,
    AutomatedPlatform,
    ManualAssistPlatform,
    PermanentError,
    PlatformRegistry,
    PostOutcome,
    RetryableError,
    Sent,
)
from autopost.services.repository import JobStore, StoreError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobAction = Literal["sent", "failed", "needs_user_action", "retry_scheduled", "skipped"]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: timedelta = timedelta(minutes=5)

    def next_run_at(self, now: datetime) -> datetime:
        return now + self.delay

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass(slots=True, frozen=True)
class ReauthRequired:
    """Terminal auth outcome: retrying without new credentials cannot succeed."""

    detail: str
    counts_attempt: bool


@dataclass(slots=True, frozen=True)
class JobResult:
    id: str
    platform: str
    action: JobAction
    external_post_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class DispatchSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    needs_user_action: int = 0
    retry_scheduled: int = 0
    skipped: int = 0
    results: list[JobResult] = field(default_factory=list)

    def record(self, result: JobResult) -> None:
        self.results.append(result)
        if result.action == "sent":
            self.sent += 1
        elif result.action == "failed":
            self.failed += 1
        elif result.action == "needs_user_action":
            self.needs_user_action += 1
        elif result.action == "retry_scheduled":
            self.retry_scheduled += 1
        else:
            self.skipped += 1


DispatchOutcome = PostOutcome | ReauthRequired


class DispatchEngine:
    """Claims due jobs and drives each one to an outcome for this attempt.

    One ``run_once`` call processes a bounded batch sequentially. The conditional
    claim in the store is the only guard against a second invocation dispatching the
    same job. Per-job failures that are not store I/O turn into a rescheduled retry
    for that job only; store errors on claim or outcome writes abort the batch and
    surface to the caller as a retryable failure.
    """

    def __init__(
        self,
        store: JobStore,
        resolver: CredentialResolver,
        platforms: PlatformRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 10,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.platforms = platforms
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = max(1, batch_size)
        self.clock = clock

    async def run_once(self) -> DispatchSummary:
        summary = DispatchSummary()
        with tracer.start_as_current_span("dispatch.run") as span:
            jobs = await self.store.select_due_jobs(
                platforms=self.platforms.tags(),
                limit=self.batch_size,
                now=self.clock(),
            )
            span.set_attribute("dispatch.selected", len(jobs))
            for job in jobs:
                summary.processed += 1
                with tracer.start_as_current_span("dispatch.job") as job_span:
                    job_span.set_attribute("job.id", job.id)
                    job_span.set_attribute("job.platform", job.platform)
                    result = await self._process(job)
                summary.record(result)
                logger.info(
                    "dispatch job id=%s platform=%s action=%s",
                    job.id,
                    job.platform,
                    result.action,
                )

        logger.info(
            "dispatch cycle processed=%s sent=%s failed=%s needs_user_action=%s retry_scheduled=%s",
            summary.processed,
            summary.sent,
            summary.failed,
            summary.needs_user_action,
            summary.retry_scheduled,
        )
        return summary

    async def publish_now(self, owner_id: str, platform_tag: str, text: str) -> DispatchOutcome:
        """Post straight to an automated platform without creating a job.

        Goes through the same credential refresh and single re-post on an auth
        rejection as a scheduled dispatch. Nothing is written to the job store, so
        the caller owns reporting the outcome.
        """
        platform = self.platforms.get(platform_tag)
        if platform is None or isinstance(platform, ManualAssistPlatform):
            raise ValueError(f"{platform_tag} does not support immediate posting")

        with tracer.start_as_current_span("dispatch.publish") as span:
            span.set_attribute("job.platform", platform.tag)
            try:
                outcome = await self._send(owner_id, platform, text)
            except httpx.HTTPError as exc:
                outcome = RetryableError(truncate_error(f"{platform.tag} request failed: {type(exc).__name__}: {exc}"))
        logger.info("publish owner=%s platform=%s outcome=%s", owner_id, platform.tag, type(outcome).__name__)
        return outcome

    async def _process(self, job: Job) -> JobResult:
        platform = self.platforms.get(job.platform)
        if platform is None:
            return JobResult(id=job.id, platform=job.platform, action="skipped", error="unsupported platform")

        if not await self.store.claim_job(job.id, now=self.clock()):
            return JobResult(id=job.id, platform=job.platform, action="skipped", error="already claimed")

        if isinstance(platform, ManualAssistPlatform):
            return await self._mark_needs_user_action(job, platform.escalation_message, counts_attempt=False)

        if self.retry_policy.exhausted(job.attempts):
            return await self._mark_failed(job, f"max attempts reached: {job.attempts}", counts_attempt=False)

        try:
            outcome = await self._send(job.owner_id, platform, job.text)
        except StoreError:
            raise
        except Exception as exc:
            logger.warning("dispatch job id=%s raised %s; rescheduling", job.id, type(exc).__name__)
            return await self._retry_or_fail(job, f"exception: {exc}")

        return await self._apply(job, outcome)

    async def _send(self, owner_id: str, platform: AutomatedPlatform, text: str) -> DispatchOutcome:
        try:
            connection = await self.resolver.resolve(owner_id, platform.tag)
        except StoreError as exc:
            return RetryableError(f"failed to load {platform.tag} connection: {exc}")

        if connection is None:
            return ReauthRequired(
                f"{platform.tag} is not connected for this user (no access token stored)",
                counts_attempt=False,
            )

        if self.resolver.needs_refresh(connection) and connection.refresh_token:
            refreshed = await self._refresh(connection)
            if not isinstance(refreshed, ProviderConnection):
                return refreshed
            connection = refreshed

        return await self._post_with_reauth(platform, connection, text)

    async def _post_with_reauth(
        self,
        platform: AutomatedPlatform,
        connection: ProviderConnection,
        text: str,
    ) -> DispatchOutcome:
        """Post once; on an auth rejection refresh the token and post exactly once more."""
        outcome = await platform.post(connection, text)
        if not isinstance(outcome, AuthError):
            return outcome

        if not connection.refresh_token:
            return ReauthRequired(f"{outcome.detail} (no refresh token stored; reconnect required)", counts_attempt=False)

        refreshed = await self._refresh(connection)
        if not isinstance(refreshed, ProviderConnection):
            return refreshed

        second = await platform.post(refreshed, text)
        if isinstance(second, AuthError):
            return ReauthRequired(f"{second.detail} (rejected again after token refresh)", counts_attempt=True)
        return second

    async def _refresh(self, connection: ProviderConnection) -> ProviderConnection | DispatchOutcome:
        try:
            result = await self.resolver.refresh(connection)
        except StoreError as exc:
            return RetryableError(f"{connection.platform} token refreshed but could not be saved: {exc}")
        if isinstance(result, RefreshFailed):
            if result.retryable:
                return RetryableError(result.detail)
            return ReauthRequired(result.detail, counts_attempt=True)
        return result.connection

    async def _apply(self, job: Job, outcome: DispatchOutcome) -> JobResult:
        if isinstance(outcome, Sent):
            return await self._mark_sent(job, outcome.external_id)
        if isinstance(outcome, RetryableError):
            return await self._retry_or_fail(job, outcome.detail)
        if isinstance(outcome, ReauthRequired):
            return await self._mark_needs_user_action(job, outcome.detail, counts_attempt=outcome.counts_attempt)
        if isinstance(outcome, AuthError):
            return await self._mark_needs_user_action(job, outcome.detail, counts_attempt=False)
        if isinstance(outcome, PermanentError):
            return await self._mark_failed(job, outcome.detail, counts_attempt=True)
        raise TypeError(f"unhandled dispatch outcome: {outcome!r}")

    async def _mark_sent(self, job: Job, external_id: str | None) -> JobResult:
        try:
            await self._write(job, status="sent", external_post_id=external_id, last_error=None)
        except StoreError:
            # The post is live; leave the row running for manual reconciliation instead of re-posting.
            logger.error("job id=%s was posted (external_id=%s) but could not be marked sent", job.id, external_id)
            raise
        return JobResult(id=job.id, platform=job.platform, action="sent", external_post_id=external_id)

    async def _retry_or_fail(self, job: Job, detail: str) -> JobResult:
        attempts = job.attempts + 1
        detail = truncate_error(detail)
        if self.retry_policy.exhausted(attempts):
            await self._write(job, status="failed", attempts=attempts, last_error=detail)
            return JobResult(id=job.id, platform=job.platform, action="failed", error=detail)

        now = self.clock()
        await self._write(
            job,
            status="pending",
            attempts=attempts,
            last_error=detail,
            run_at=self.retry_policy.next_run_at(now),
        )
        return JobResult(id=job.id, platform=job.platform, action="retry_scheduled", error=detail)

    async def _mark_needs_user_action(self, job: Job, detail: str, *, counts_attempt: bool) -> JobResult:
        detail = truncate_error(detail)
        fields: dict[str, object] = {"status": "needs_user_action", "last_error": detail}
        if counts_attempt:
            fields["attempts"] = job.attempts + 1
        await self._write(job, **fields)
        return JobResult(id=job.id, platform=job.platform, action="needs_user_action", error=detail)

    async def _mark_failed(self, job: Job, detail: str, *, counts_attempt: bool) -> JobResult:
        detail = truncate_error(detail)
        fields: dict[str, object] = {"status": "failed", "last_error": detail}
        if counts_attempt:
            fields["attempts"] = job.attempts + 1
        await self._write(job, **fields)
        return JobResult(id=job.id, platform=job.platform, action="failed", error=detail)

    async def _write(self, job: Job, **fields: object) -> None:
        applied = await self.store.apply_outcome(job.id, now=self.clock(), **fields)
        if not applied:
            logger.warning(
                "job id=%s left running state during dispatch; outcome status=%s discarded",
                job.id,
                fields.get("status"),
            )
