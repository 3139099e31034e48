from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from autopost.services.alerts import AlertDelivery
from autopost.services.dispatch import DispatchSummary
from autopost.services.monitor import MonitorReport


class JobResultOut(BaseModel):
    id: str
    platform: str
    action: Literal["sent", "failed", "needs_user_action", "retry_scheduled", "skipped"]
    external_post_id: str | None = None
    error: str | None = None


class DispatchRunOut(BaseModel):
    ok: bool = True
    processed: int
    sent: int
    failed: int
    needs_user_action: int
    retry_scheduled: int
    skipped: int
    results: list[JobResultOut] = Field(default_factory=list)

    @classmethod
    def from_summary(cls, summary: DispatchSummary) -> "DispatchRunOut":
        return cls(
            processed=summary.processed,
            sent=summary.sent,
            failed=summary.failed,
            needs_user_action=summary.needs_user_action,
            retry_scheduled=summary.retry_scheduled,
            skipped=summary.skipped,
            results=[
                JobResultOut(
                    id=result.id,
                    platform=result.platform,
                    action=result.action,
                    external_post_id=result.external_post_id,
                    error=result.error,
                )
                for result in summary.results
            ],
        )


class AlertDeliveryOut(BaseModel):
    signature: str
    sent: bool
    suppressed: bool
    delivered: bool
    reason: str | None = None

    @classmethod
    def from_delivery(cls, delivery: AlertDelivery) -> "AlertDeliveryOut":
        return cls(
            signature=delivery.signature,
            sent=delivery.sent,
            suppressed=delivery.suppressed,
            delivered=delivery.delivered,
            reason=delivery.reason,
        )


class MonitorRunOut(BaseModel):
    ok: bool = True
    anomalies: int
    counts: dict[str, int] = Field(default_factory=dict)
    query_errors: dict[str, str] = Field(default_factory=dict)
    alert: AlertDeliveryOut | None = None

    @classmethod
    def from_report(cls, report: MonitorReport) -> "MonitorRunOut":
        return cls(
            anomalies=report.anomaly_count,
            counts={block.kind: len(block.jobs) for block in report.blocks},
            query_errors=dict(report.query_errors),
            alert=AlertDeliveryOut.from_delivery(report.delivery) if report.delivery is not None else None,
        )


class TriggerFailureReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: int
    url: str
    response_text: str = Field(default="", alias="responseText")


class ReportOut(BaseModel):
    ok: bool = True
    alert: AlertDeliveryOut
