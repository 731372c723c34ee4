from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from resizepipe.api.schemas.jobs import JobResponse


class SubmitNotificationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    collection: str = Field(min_length=1, max_length=255)
    key: str = Field(min_length=1, max_length=1024)
    version: str | None = Field(default=None, max_length=255)
    content_type_hint: str | None = Field(default=None, max_length=255)
    block_seconds: float | None = Field(default=None, ge=0.0, le=300.0)


class S3EventRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    Records: list[dict[str, Any]] = Field(default_factory=list)


class SubmitNotificationResponse(BaseModel):
    accepted: bool
    job: JobResponse | None
    detail: str | None = None


class S3EventResponse(BaseModel):
    received: int
    accepted: list[JobResponse]
    ignored: int
