from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from resizepipe.core.errors import (
    ObjectNotFoundError,
    PipelineError,
    StorePermissionError,
    StoreUnavailableError,
)
from resizepipe.store.base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchVersion", "NoSuchBucket", "NotFound", "404"}
_PERMISSION_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "AccountProblem",
    "403",
}


def _translate_client_error(exc: ClientError, *, collection: str, key: str, writing: bool) -> PipelineError:
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    message = str(error.get("Message", "")) or code
    location = f"s3://{collection}/{key}"
    if code in _NOT_FOUND_CODES and not writing:
        return ObjectNotFoundError(f"Object not found: {location}")
    if code in _PERMISSION_CODES:
        return StorePermissionError(f"Permission denied for {location}: {message}")
    return StoreUnavailableError(f"S3 error {code or 'unknown'} for {location}: {message}")


class S3ObjectStore(ObjectStore):
    def __init__(
        self,
        client: Any | None = None,
        *,
        region_name: str | None = None,
        endpoint_url: str | None = None,
    ):
        self._client = client or boto3.client(
            "s3",
            region_name=region_name,
            endpoint_url=endpoint_url,
            config=Config(
                retries={"max_attempts": 2, "mode": "standard"},
                connect_timeout=5,
                read_timeout=30,
            ),
        )

    def get(self, collection: str, key: str, version: str | None = None) -> StoredObject:
        params: dict[str, Any] = {"Bucket": collection, "Key": key}
        if version is not None:
            params["VersionId"] = version
        try:
            response = self._client.get_object(**params)
            data = response["Body"].read()
        except ClientError as exc:
            raise _translate_client_error(exc, collection=collection, key=key, writing=False) from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"S3 unavailable reading s3://{collection}/{key}: {exc}") from exc

        return StoredObject(
            data=data,
            content_type=str(response.get("ContentType") or "application/octet-stream"),
            metadata={str(k): str(v) for k, v in dict(response.get("Metadata") or {}).items()},
            version=response.get("VersionId") or version,
        )

    def put(
        self,
        collection: str,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        try:
            self._client.put_object(
                Bucket=collection,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=dict(metadata or {}),
            )
        except ClientError as exc:
            raise _translate_client_error(exc, collection=collection, key=key, writing=True) from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"S3 unavailable writing s3://{collection}/{key}: {exc}") from exc
        logger.debug("Uploaded s3://%s/%s (%s bytes)", collection, key, len(data))
