# src/folder_archiver/clients.py

"""
Client wrapper for the S3 operations the archiving pipeline consumes.

The wrapper gives the pipeline a small typed surface over a raw boto3 client
(list page, ranged get, multipart create/upload/complete/abort, put) and turns
every botocore failure into the service exception for that operation. Callers
never see ``ClientError``; a failed call always raises, it never returns an
unset result.
"""

import logging
from contextlib import closing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .config import AppConfig
from .exceptions import FetchError, ListingError, UploadError
from .schemas import CompletedPartDict, ObjectDescriptor

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPE = "application/zip"

# AWS error codes mapped onto the error codes carried by our exceptions
_AWS_ERROR_CODES: dict[str, str] = {
    "NoSuchKey": "S3_OBJECT_NOT_FOUND",
    "NoSuchBucket": "S3_BUCKET_NOT_FOUND",
    "AccessDenied": "S3_ACCESS_DENIED",
    "Throttling": "S3_THROTTLING",
    "ThrottlingException": "S3_THROTTLING",
    "RequestLimitExceeded": "S3_THROTTLING",
    "SlowDown": "S3_THROTTLING",
    "RequestTimeout": "S3_TIMEOUT",
    "RequestTimeoutException": "S3_TIMEOUT",
    "NoSuchUpload": "S3_NO_SUCH_UPLOAD",
    "InvalidPart": "S3_INVALID_PART",
    "InvalidPartOrder": "S3_INVALID_PART",
    "EntityTooSmall": "S3_INVALID_PART",
}


def describe_aws_error(error: Exception) -> tuple[str, str, dict[str, Any]]:
    """
    Classify a boto3/botocore failure.

    Returns ``(error_code, reason, context)`` where ``context`` holds the raw
    AWS details for structured logging.
    """
    if isinstance(error, ClientError):
        aws_code = error.response.get("Error", {}).get("Code", "Unknown")
        aws_message = error.response.get("Error", {}).get("Message", str(error))
        return (
            _AWS_ERROR_CODES.get(aws_code, "S3_CLIENT_ERROR"),
            aws_message,
            {"aws_error_code": aws_code, "aws_error_message": aws_message},
        )
    if isinstance(error, (ReadTimeoutError, ConnectTimeoutError)):
        return "S3_TIMEOUT", "request timed out", {"timeout_error": str(error)}
    if isinstance(error, EndpointConnectionError):
        return (
            "S3_CONNECTION_ERROR",
            "endpoint connection error",
            {"connection_error": str(error)},
        )
    return "S3_CLIENT_ERROR", str(error), {"botocore_error": str(error)}


@dataclass(frozen=True, slots=True)
class ListPage:
    objects: list[ObjectDescriptor]
    next_token: str | None
    is_truncated: bool


@dataclass(frozen=True, slots=True)
class ObjectRead:
    """Body of a GetObject call. ``data`` is None when the body was missing."""

    data: bytes | None
    content_range: str | None = None


class S3Client:
    """
    A wrapper for S3 client operations used by the archiving pipeline.

    boto3 clients are thread-safe, so one instance is shared by every fetch
    and upload worker.
    """

    def __init__(self, s3_client: "S3ClientType"):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
        """
        self._client = s3_client

    # --- Listing ---

    def list_objects_page(
        self,
        bucket: str,
        prefix: str,
        max_keys: int = 1000,
        continuation_token: str | None = None,
    ) -> ListPage:
        """Fetches one ListObjectsV2 page. Raises ListingError on any failure."""
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        try:
            response = self._client.list_objects_v2(**params)
        except (ClientError, BotoCoreError) as e:
            error_code, reason, context = describe_aws_error(e)
            raise ListingError(
                bucket, prefix, reason, error_code=error_code, context=context
            ) from e

        objects = [
            ObjectDescriptor(key=item["Key"], size=item.get("Size", 0))
            for item in response.get("Contents", [])
            if item.get("Key")
        ]
        return ListPage(
            objects=objects,
            next_token=response.get("NextContinuationToken"),
            is_truncated=bool(response.get("IsTruncated", False)),
        )

    # --- Download ---

    def get_object(
        self, bucket: str, key: str, byte_range: tuple[int, int] | None = None
    ) -> ObjectRead:
        """
        Reads an object, or the inclusive ``byte_range`` of it, fully into memory.
        Raises FetchError for any failure of the request or of the body read.
        """
        params: dict[str, Any] = {"Bucket": bucket, "Key": key}
        if byte_range is not None:
            params["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"

        try:
            response = self._client.get_object(**params)
            body = response.get("Body")
            if body is None:
                return ObjectRead(data=None)
            with closing(body):
                data = body.read()
        except (ClientError, BotoCoreError) as e:
            error_code, reason, context = describe_aws_error(e)
            if byte_range is not None:
                context["range"] = params["Range"]
            raise FetchError(
                bucket, key, reason, error_code=error_code, context=context
            ) from e

        return ObjectRead(
            data=data,
            content_range=response.get("ContentRange"),
        )

    # --- Multipart upload ---

    def create_multipart_upload(
        self, bucket: str, key: str, content_type: str = ZIP_CONTENT_TYPE
    ) -> str:
        try:
            response = self._client.create_multipart_upload(
                Bucket=bucket, Key=key, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise self._upload_error("CreateMultipartUpload", bucket, key, e) from e

        upload_id = response.get("UploadId")
        if not upload_id:
            raise UploadError(
                "CreateMultipartUpload",
                bucket,
                key,
                "response carried no UploadId",
                error_code="S3_MISSING_UPLOAD_ID",
            )
        return upload_id

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: bytes
    ) -> str:
        """Uploads one part and returns its ETag."""
        try:
            response = self._client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        except (ClientError, BotoCoreError) as e:
            error = self._upload_error("UploadPart", bucket, key, e)
            error.context["part_number"] = part_number
            raise error from e

        etag = response.get("ETag")
        if not etag:
            raise UploadError(
                "UploadPart",
                bucket,
                key,
                "response carried no ETag",
                error_code="S3_MISSING_ETAG",
                context={"part_number": part_number},
            )
        return etag

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: Sequence[CompletedPartDict]
    ) -> None:
        try:
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": list(parts)},
            )
        except (ClientError, BotoCoreError) as e:
            error = self._upload_error("CompleteMultipartUpload", bucket, key, e)
            error.context["part_count"] = len(parts)
            raise error from e

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self._client.abort_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id
            )
        except (ClientError, BotoCoreError) as e:
            raise self._upload_error("AbortMultipartUpload", bucket, key, e) from e

    # --- Single-shot upload ---

    def put_object(
        self, bucket: str, key: str, body: bytes, content_type: str = ZIP_CONTENT_TYPE
    ) -> None:
        logger.info(
            "Uploading archive with a single PutObject",
            extra={"bucket": bucket, "key": key, "size": len(body)},
        )
        try:
            self._client.put_object(
                Bucket=bucket, Key=key, Body=body, ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            raise self._upload_error("PutObject", bucket, key, e) from e

    @staticmethod
    def _upload_error(
        operation: str, bucket: str, key: str, error: Exception
    ) -> UploadError:
        error_code, reason, context = describe_aws_error(error)
        return UploadError(
            operation, bucket, key, reason, error_code=error_code, context=context
        )


def build_boto3_client(config: AppConfig) -> "S3ClientType":
    """
    Creates the boto3 S3 client for the pipeline.

    The connection pool is sized for every fetch and upload worker at once,
    and retries are governed by ``S3_MAX_ATTEMPTS`` (1 means none).
    """
    boto_config = BotoConfig(
        region_name=config.region,
        max_pool_connections=config.fetch_concurrency + config.upload_concurrency + 2,
        connect_timeout=config.s3_operation_timeout_seconds,
        read_timeout=config.s3_operation_timeout_seconds,
        retries={"total_max_attempts": config.s3_max_attempts, "mode": "standard"},
    )
    credentials: dict[str, str] = {}
    if config.has_explicit_credentials:
        credentials = {
            "aws_access_key_id": config.access_key_id,
            "aws_secret_access_key": config.secret_access_key,
        }
    return boto3.client("s3", config=boto_config, **credentials)
