from pydantic import BaseModel, ConfigDict, Field


class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    platform: str = Field(default="x", alias="provider")


class PublishResponse(BaseModel):
    platform: str
    status: str = "sent"
    external_post_id: str | None = None
