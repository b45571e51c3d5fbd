"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import io
import json
import os
import threading
import time
import types
import uuid
from dataclasses import replace

import pytest
from botocore.exceptions import ClientError

from folder_archiver.clients import S3Client
from folder_archiver.config import AppConfig


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the handler.
    """
    original = os.environ.copy()
    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "folder-archiver-test")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
    os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "FolderArchiverTest")
    os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
    yield
    os.environ.clear()
    os.environ.update(original)


# ---------- In-memory stand-in for a boto3 S3 client ---------- #


def _client_error(code: str, operation: str, message: str = "simulated") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class FakeS3:
    """
    Just enough of the boto3 S3 client for the pipeline: paginated listing,
    ranged GetObject, multipart upload and PutObject. Thread-safe.
    """

    def __init__(self, objects: dict[str, dict[str, bytes]] | None = None, get_delay: float = 0.0):
        self.buckets: dict[str, dict[str, bytes]] = objects or {}
        self.get_delay = get_delay
        self.fail_get_keys: set[str] = set()
        self.fail_upload_part_numbers: set[int] = set()
        self.list_calls: list[dict] = []
        self.get_calls: list[dict] = []
        self.uploads: dict[str, dict] = {}
        self.put_calls: list[dict] = []
        self.active_gets = 0
        self.max_active_gets = 0
        self._lock = threading.Lock()
        self._upload_counter = 0

    def put(self, bucket: str, key: str, data: bytes) -> None:
        self.buckets.setdefault(bucket, {})[key] = data

    # --- Listing ---
    def list_objects_v2(self, Bucket, Prefix, MaxKeys=1000, ContinuationToken=None):
        self.list_calls.append({"Prefix": Prefix, "MaxKeys": MaxKeys, "ContinuationToken": ContinuationToken})
        keys = sorted(k for k in self.buckets.get(Bucket, {}) if k.startswith(Prefix))
        start = int(ContinuationToken) if ContinuationToken else 0
        page = keys[start : start + MaxKeys]
        response = {
            "Contents": [{"Key": k, "Size": len(self.buckets[Bucket][k])} for k in page],
            "IsTruncated": start + MaxKeys < len(keys),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + MaxKeys)
        return response

    # --- Download ---
    def get_object(self, Bucket, Key, Range=None):
        with self._lock:
            self.get_calls.append({"Key": Key, "Range": Range})
            self.active_gets += 1
            self.max_active_gets = max(self.max_active_gets, self.active_gets)
        try:
            if self.get_delay:
                time.sleep(self.get_delay)
            if Key in self.fail_get_keys:
                raise _client_error("AccessDenied", "GetObject")
            data = self.buckets.get(Bucket, {}).get(Key)
            if data is None:
                raise _client_error("NoSuchKey", "GetObject")
            if Range is None:
                return {"Body": io.BytesIO(data), "ContentLength": len(data)}
            first, last = (int(v) for v in Range.removeprefix("bytes=").split("-"))
            last = min(last, len(data) - 1)
            body = data[first : last + 1]
            return {
                "Body": io.BytesIO(body),
                "ContentLength": len(body),
                "ContentRange": f"bytes {first}-{last}/{len(data)}",
            }
        finally:
            with self._lock:
                self.active_gets -= 1

    # --- Multipart ---
    def create_multipart_upload(self, Bucket, Key, ContentType=None):
        with self._lock:
            self._upload_counter += 1
            upload_id = f"upload-{self._upload_counter}"
            self.uploads[upload_id] = {
                "Bucket": Bucket,
                "Key": Key,
                "parts": {},
                "state": "open",
                "completed_parts": None,
            }
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        if PartNumber in self.fail_upload_part_numbers:
            raise _client_error("InternalError", "UploadPart")
        with self._lock:
            upload = self.uploads[UploadId]
            if upload["state"] != "open":
                raise _client_error("NoSuchUpload", "UploadPart")
            upload["parts"][PartNumber] = bytes(Body)
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        parts = MultipartUpload["Parts"]
        numbers = [p["PartNumber"] for p in parts]
        if numbers != list(range(1, len(numbers) + 1)):
            raise _client_error("InvalidPartOrder", "CompleteMultipartUpload")
        with self._lock:
            upload = self.uploads[UploadId]
            upload["state"] = "completed"
            upload["completed_parts"] = parts
            self.put(Bucket, Key, b"".join(upload["parts"][n] for n in numbers))
        return {}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        with self._lock:
            self.uploads[UploadId]["state"] = "aborted"
        return {}

    # --- Single shot ---
    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.put_calls.append({"Bucket": Bucket, "Key": Key, "size": len(Body)})
        self.put(Bucket, Key, bytes(Body))
        return {}


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def s3_client(fake_s3: FakeS3) -> S3Client:
    return S3Client(s3_client=fake_s3)


# ---------- Configuration ---------- #

BASE_CONFIG = AppConfig(
    source_bucket="source-bucket",
    destination_bucket="zip-bucket",
    environment="test",
    service_name="folder-archiver-test",
    region="eu-west-1",
    access_key_id=None,
    secret_access_key=None,
    log_level="DEBUG",
    part_size_mb=5,
    fetch_concurrency=20,
    upload_concurrency=4,
    ranged_fetch_threshold_mb=8,
    range_window_mb=5,
    list_page_size=1000,
    stream_buffer_chunks=16,
    s3_operation_timeout_seconds=30,
    s3_max_attempts=1,
)


@pytest.fixture
def make_config():
    """Returns a factory producing AppConfig instances with overrides."""

    def _make(**overrides) -> AppConfig:
        return replace(BASE_CONFIG, **overrides)

    return _make


# ---------- Minimal, realistic dummy events ---------- #


@pytest.fixture
def api_event():
    """Builds an API Gateway REST proxy event for POST /folders."""

    def _build(body, path: str = "/folders", method: str = "POST") -> dict:
        return {
            "resource": path,
            "path": path,
            "httpMethod": method,
            "headers": {"Content-Type": "application/json"},
            "multiValueHeaders": {"Content-Type": ["application/json"]},
            "queryStringParameters": None,
            "multiValueQueryStringParameters": None,
            "pathParameters": None,
            "stageVariables": None,
            "requestContext": {
                "requestId": "apigw-" + uuid.uuid4().hex,
                "stage": "test",
                "httpMethod": method,
                "path": f"/test{path}",
                "resourcePath": path,
            },
            "body": body if body is None or isinstance(body, str) else json.dumps(body),
            "isBase64Encoded": False,
        }

    return _build


@pytest.fixture
def lambda_context():
    """A *very* small stand-in for the LambdaContext object."""
    return types.SimpleNamespace(
        function_name="folder-archiver",
        function_version="$LATEST",
        memory_limit_in_mb=512,
        aws_request_id="req-" + uuid.uuid4().hex,
        invoked_function_arn="arn:aws:lambda:eu-west-1:000000000000:function:folder-archiver",
        get_remaining_time_in_millis=lambda: 30000,
    )
