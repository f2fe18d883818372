"""
Blob store adapter for the remote storage backend.

Key-based put/get scoped to one bucket. The S3 implementation works with
AWS and any S3-compatible endpoint.
"""

import logging
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStoreError(Exception):
    """Blob store request failed."""

    def __init__(self, message: str, key: str = None):
        self.message = message
        self.key = key
        super().__init__(message)


class BlobStore(Protocol):
    """Minimal object storage capability."""

    def put(self, key: str, data: bytes) -> None: ...

    def get(self, key: str) -> bytes | None: ...


class S3BlobStore:
    """S3 bucket accessed through boto3. Calls are blocking."""

    def __init__(self, bucket_name: str, region: str = None, endpoint: str = None, session=None):
        self.bucket_name = bucket_name
        self._session = session or boto3.session.Session()
        self._client = self._session.client("s3", region_name=region or None, endpoint_url=endpoint or None)

    def put(self, key: str, data: bytes) -> None:
        try:
            self._client.put_object(Bucket=self.bucket_name, Key=key, Body=data)
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"error uploading s3://{self.bucket_name}/{key}: {e}", key=key) from e

    def get(self, key: str) -> bytes | None:
        """Object bytes, or None when the key does not exist."""
        try:
            response = self._client.get_object(Bucket=self.bucket_name, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise BlobStoreError(f"error downloading s3://{self.bucket_name}/{key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise BlobStoreError(f"error downloading s3://{self.bucket_name}/{key}: {e}", key=key) from e

    def log_caller_identity(self) -> None:
        """Log the resolved cloud identity for auditability (best effort)."""
        try:
            identity = self._session.client("sts").get_caller_identity()
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Failed to resolve AWS caller identity: {e}")
            return
        logger.info(
            f"AWS identity: account={identity.get('Account')} user={identity.get('UserId')} arn={identity.get('Arn')}"
        )
