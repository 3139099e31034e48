from datetime import datetime

from pydantic import BaseModel, Field

from autopost.services.models import ProviderConnection


class ConnectionTokensRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    expires_in: int | None = Field(default=None, ge=0)
    scopes: list[str] = Field(default_factory=list)


class ConnectionStatusOut(BaseModel):
    platform: str
    connected: bool
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None
    bumped_jobs: int | None = None

    @classmethod
    def from_connection(
        cls,
        platform: str,
        connection: ProviderConnection | None,
        *,
        bumped_jobs: int | None = None,
    ) -> "ConnectionStatusOut":
        if connection is None:
            return cls(platform=platform, connected=False, bumped_jobs=bumped_jobs)
        return cls(
            platform=platform,
            connected=connection.connected,
            expires_at=connection.expires_at,
            scopes=list(connection.scopes),
            updated_at=connection.updated_at,
            bumped_jobs=bumped_jobs,
        )
