"""Object storage interface and an S3-compatible implementation.

Requires ``boto3``. The backup tool writes to the bucket directly from the
nodes; the control plane only lists, sizes, deletes and presigns.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ObjectStorage(Protocol):
    """Protocol for object storage backends."""

    def list_keys(self, prefix: str) -> list[str]: ...

    def head_size(self, key: str) -> int | None: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def presigned_put_url(self, key: str, expires_seconds: int) -> str: ...

    def presigned_get_url(self, key: str, expires_seconds: int) -> str: ...


class S3ObjectStorage:
    """S3-compatible storage via boto3."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket
        if client is not None:
            self._client = client
        else:
            import boto3

            self._client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                region_name=region,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
            )

    @property
    def bucket(self) -> str:
        return self._bucket

    def list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return keys

    def head_size(self, key: str) -> int | None:
        from botocore.exceptions import ClientError

        try:
            resp = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise
        return int(resp["ContentLength"])

    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under *prefix*. Returns the number deleted."""
        keys = self.list_keys(prefix)
        deleted = 0
        for start in range(0, len(keys), 1000):
            chunk = keys[start:start + 1000]
            self._client.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": True},
            )
            deleted += len(chunk)
        logger.info("Deleted %d objects under s3://%s/%s", deleted, self._bucket, prefix)
        return deleted

    def presigned_put_url(self, key: str, expires_seconds: int) -> str:
        return self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )

    def presigned_get_url(self, key: str, expires_seconds: int) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )
