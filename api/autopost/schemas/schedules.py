from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from autopost.services.models import Job, JobStatus


class ComposeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    run_at: datetime = Field(alias="runAt")
    platforms: list[str] = Field(default_factory=list)
    platform: str | None = Field(default=None, alias="provider")
    draft_id: str | None = Field(default=None, alias="draftId")

    def targets(self) -> list[str]:
        targets = list(self.platforms)
        if self.platform:
            targets.append(self.platform)
        return targets


class JobOut(BaseModel):
    id: str
    platform: str
    text: str
    run_at: datetime
    status: str
    attempts: int
    group_id: str | None = None
    draft_id: str | None = None
    last_error: str | None = None
    external_post_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    reconnect_suggested: bool = False

    @classmethod
    def from_job(cls, job: Job) -> "JobOut":
        return cls(
            id=job.id,
            platform=job.platform,
            text=job.text,
            run_at=job.run_at,
            status=job.status,
            attempts=job.attempts,
            group_id=job.group_id,
            draft_id=job.draft_id,
            last_error=job.last_error,
            external_post_id=job.external_post_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            reconnect_suggested=job.reconnect_suggested,
        )


class ComposeResponse(BaseModel):
    group_id: str | None = None
    jobs: list[JobOut] = Field(default_factory=list)


class JobSelectorRequest(BaseModel):
    """Targets one job by id or a whole group, optionally narrowed to one platform."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    group_id: str | None = Field(default=None, alias="groupId")
    platform: str | None = Field(default=None, alias="provider")

    @model_validator(mode="after")
    def require_selector(self) -> "JobSelectorRequest":
        if not self.id and not self.group_id:
            raise ValueError("id or group_id is required")
        return self


class JobTransitionResponse(BaseModel):
    updated: int
    jobs: list[JobOut] = Field(default_factory=list)
