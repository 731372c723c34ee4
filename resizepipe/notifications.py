from __future__ import annotations

import json
import logging
import urllib.parse
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class ObjectCreatedNotification(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    collection: str = Field(min_length=1, max_length=255)
    key: str = Field(min_length=1, max_length=1024)
    version: str | None = Field(default=None, max_length=255)
    content_type_hint: str | None = Field(default=None, max_length=255)

    @field_validator("collection", "key")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


def _iter_s3_records(event: dict[str, Any]) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for record in event.get("Records", []):
        if record.get("eventSource") == "aws:sqs":
            body = json.loads(record.get("body") or "{}")
            records.extend(body.get("Records", []))
        else:
            records.append(record)
    return records


def parse_s3_event(event: dict[str, Any]) -> list[ObjectCreatedNotification]:
    notifications: list[ObjectCreatedNotification] = []
    for record in _iter_s3_records(event):
        event_name = str(record.get("eventName", ""))
        if event_name and not event_name.startswith("ObjectCreated"):
            logger.debug("Skipping S3 record with eventName=%s", event_name)
            continue

        s3_info = record.get("s3", {})
        bucket = s3_info.get("bucket", {}).get("name", "")
        s3_object = s3_info.get("object", {})
        key = urllib.parse.unquote_plus(s3_object.get("key", ""))
        if not bucket or not key:
            logger.warning("Skipping S3 record without bucket or key: %s", record)
            continue

        notifications.append(
            ObjectCreatedNotification(
                collection=bucket,
                key=key,
                version=s3_object.get("versionId") or None,
                content_type_hint=s3_object.get("contentType") or None,
            )
        )
    return notifications
