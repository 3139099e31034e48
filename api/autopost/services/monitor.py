from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import timedelta

from opentelemetry import trace

from autopost.core.clock import Clock, isoformat, utc_now
from autopost.services.alerts import AlertDeduper, AlertDelivery
from autopost.services.models import JOB_STATUSES, Job
from autopost.services.repository import JobStore, StoreError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ROW_ERROR_PREVIEW = 300


@dataclass(slots=True, frozen=True)
class MonitorThresholds:
    stale_pending: timedelta = timedelta(minutes=10)
    stuck_running: timedelta = timedelta(minutes=15)
    failure_lookback: timedelta = timedelta(minutes=60)
    row_limit: int = 20


@dataclass(slots=True)
class AnomalyBlock:
    kind: str
    title: str
    jobs: list[Job]

    def render(self) -> str:
        lines = [f"=== {self.title} ({len(self.jobs)}) ==="]
        for job in self.jobs:
            lines.append(
                f"- id={job.id} platform={job.platform} status={job.status} attempts={job.attempts} "
                f"run_at={isoformat(job.run_at)} updated_at={isoformat(job.updated_at)} "
                f"group_id={job.group_id or ''}"
            )
            if job.last_error:
                lines.append(f"  last_error={job.last_error[:ROW_ERROR_PREVIEW]}")
        return "\n".join(lines)


@dataclass(slots=True)
class MonitorReport:
    blocks: list[AnomalyBlock] = field(default_factory=list)
    query_errors: dict[str, str] = field(default_factory=dict)
    delivery: AlertDelivery | None = None

    @property
    def anomaly_count(self) -> int:
        return sum(len(block.jobs) for block in self.blocks)


class AnomalyMonitor:
    """Looks for jobs the dispatcher has lost track of and raises one deduped alert."""

    def __init__(
        self,
        store: JobStore,
        deduper: AlertDeduper,
        *,
        thresholds: MonitorThresholds | None = None,
        window: timedelta = timedelta(minutes=60),
        subject_prefix: str = "[autopost]",
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.deduper = deduper
        self.thresholds = thresholds or MonitorThresholds()
        self.window = window
        self.subject_prefix = subject_prefix
        self.clock = clock

    async def run_once(self) -> MonitorReport:
        report = MonitorReport()
        with tracer.start_as_current_span("monitor.run") as span:
            now = self.clock()
            limit = self.thresholds.row_limit
            checks = (
                (
                    "stale_pending",
                    f"pending more than {_minutes(self.thresholds.stale_pending)} min past run_at (scheduler may be down)",
                    dict(
                        statuses=["pending"],
                        run_at_before=now - self.thresholds.stale_pending,
                        order_by="run_at",
                    ),
                ),
                (
                    "needs_user_action",
                    "waiting on user action",
                    dict(statuses=["needs_user_action"], order_by="updated_at", descending=True),
                ),
                (
                    "failed",
                    f"failed / auth_required in the last {_minutes(self.thresholds.failure_lookback)} min",
                    dict(
                        statuses=["failed", "auth_required"],
                        updated_after=now - self.thresholds.failure_lookback,
                        order_by="updated_at",
                        descending=True,
                    ),
                ),
                (
                    "stuck_running",
                    f"running for more than {_minutes(self.thresholds.stuck_running)} min (dispatch crashed mid-job?)",
                    dict(
                        statuses=["running"],
                        updated_before=now - self.thresholds.stuck_running,
                        order_by="updated_at",
                    ),
                ),
            )

            for kind, title, query in checks:
                await self._collect(report, kind, title, self.store.query_jobs(limit=limit, **query))
            await self._collect(
                report,
                "unknown_status",
                "status outside the known job states",
                self.store.query_unknown_status_jobs(known_statuses=sorted(JOB_STATUSES), limit=limit),
            )

            span.set_attribute("monitor.anomalies", report.anomaly_count)
            if not report.blocks:
                logger.info("monitor found no anomalies")
                return report

            body = self.render_body(report.blocks)
            subject = f"{self.subject_prefix} Monitor alert ({report.anomaly_count})"
            report.delivery = await self.deduper.dispatch(kind="monitor", subject=subject, body=body, window=self.window)
        return report

    @staticmethod
    async def _collect(report: MonitorReport, kind: str, title: str, query: Awaitable[list[Job]]) -> None:
        try:
            jobs = await query
        except (StoreError, ValueError, KeyError) as exc:
            # ValueError and KeyError come from rows too malformed to normalize.
            logger.warning("monitor query %s failed: %s", kind, exc)
            report.query_errors[kind] = str(exc)
            return
        if jobs:
            report.blocks.append(AnomalyBlock(kind=kind, title=title, jobs=jobs))

    @staticmethod
    def render_body(blocks: list[AnomalyBlock]) -> str:
        sections = ["The job monitor detected anomalies.", ""]
        for block in blocks:
            sections.append(block.render())
            sections.append("")
        return "\n".join(sections).rstrip() + "\n"


async def report_trigger_failure(
    deduper: AlertDeduper,
    *,
    status_code: int,
    url: str,
    response_text: str,
    window: timedelta,
    subject_prefix: str = "[autopost]",
) -> AlertDelivery:
    """Forward a failed trigger call reported by the cron host, deduped on its content."""
    subject = f"{subject_prefix} Cron error: {status_code} (report)"
    body = f"A scheduled trigger call failed.\n\nStatus: {status_code}\nURL: {url}\n\nResponse:\n{response_text}"
    return await deduper.dispatch(kind="report", subject=subject, body=body, window=window)


def _minutes(value: timedelta) -> int:
    return int(value.total_seconds() // 60)
