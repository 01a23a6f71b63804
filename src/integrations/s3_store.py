#!/usr/bin/env python3
"""
S3 artifact store.

Uploads artifacts with boto3 ``put_object``. boto3 is synchronous, so each
upload runs in a worker thread. botocore errors are translated into
StorageError with a ``retryable`` flag.
"""

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError, ClientError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError,
)

from core.exceptions import ArtifactAccessDenied, BucketNotFound, StorageError

logger = logging.getLogger(__name__)

ACCESS_DENIED_CODES = {'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch', 'AllAccessDisabled'}
BUCKET_MISSING_CODES = {'NoSuchBucket'}
THROTTLING_CODES = {'SlowDown', 'Throttling', 'ThrottlingException', 'RequestTimeout',
                    'RequestTimeTooSkewed', 'ServiceUnavailable', 'InternalError'}


def translate_client_error(key: str, error: ClientError) -> StorageError:
    """Map a botocore ClientError to a pipeline storage error."""
    details = error.response.get('Error', {})
    code = details.get('Code', 'Unknown')
    message = details.get('Message', str(error))
    status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')

    if code in ACCESS_DENIED_CODES:
        return ArtifactAccessDenied(key, message)
    if code in BUCKET_MISSING_CODES:
        return BucketNotFound(key, message)
    retryable = code in THROTTLING_CODES or (status is not None and status >= 500)
    return StorageError(key, code, message, retryable=retryable)


class S3ArtifactStore:
    """Artifact store backed by an S3 bucket."""

    def __init__(self, bucket: str, client: Optional[Any] = None, region_name: Optional[str] = None):
        """
        Initialize store.

        Args:
            bucket: Bucket name
            client: boto3 S3 client (created if None)
            region_name: AWS region for a created client
        """
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region_name)

    def _put(self, key: str, body: bytes, content_type: str) -> str:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        return f"s3://{self.bucket}/{key}"

    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> str:
        """
        Upload ``body`` under ``key``.

        Raises:
            ArtifactAccessDenied: Credentials cannot write the bucket
            BucketNotFound: Bucket does not exist
            StorageError: Anything else, ``retryable`` set for transient causes
        """
        try:
            location = await asyncio.to_thread(self._put, key, body, content_type)
        except ClientError as e:
            raise translate_client_error(key, e) from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            raise StorageError(key, type(e).__name__, str(e), retryable=True) from e
        except BotoCoreError as e:
            raise StorageError(key, type(e).__name__, str(e), retryable=False) from e

        logger.info(f"Uploaded {len(body)} bytes to {location}")
        return location
