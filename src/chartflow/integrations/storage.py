from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from chartflow.config import get_settings
from chartflow.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    bucket: str
    key: str
    url: str


class ObjectStorageClient:
    """S3/MinIO access for uploaded chart documents."""

    def __init__(self, *, bucket: Optional[str] = None, client=None) -> None:
        settings = get_settings()
        self.bucket = bucket or settings.S3_BUCKET_NAME
        if not self.bucket:
            raise ConfigurationError("S3 bucket is not configured", config_key="S3_BUCKET_NAME")
        self.expires_in = settings.S3_PRESIGN_EXPIRES_SECONDS
        self._client = client or boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            region_name=settings.S3_REGION_NAME,
        )

    def presigned_url(self, key: str, *, expires_in: Optional[int] = None) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in or self.expires_in,
        )

    def upload_file(
        self, local_path: str, key: str, *, content_type: Optional[str] = None
    ) -> StoredObject:
        extra = {"ContentType": content_type} if content_type else None
        try:
            self._client.upload_file(local_path, self.bucket, key, ExtraArgs=extra)
        except (BotoCoreError, ClientError) as exc:
            logger.error("Upload of %s to s3://%s/%s failed: %s", local_path, self.bucket, key, exc)
            raise
        return StoredObject(bucket=self.bucket, key=key, url=self.presigned_url(key))
