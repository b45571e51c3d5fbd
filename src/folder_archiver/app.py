"""
The Lambda Adapter for the Folder Archiver service.

This module is the main entry point for the AWS Lambda function behind API
Gateway. It is responsible for:
1.  Initializing AWS Lambda Powertools (Logger, Tracer, Metrics and the REST
    event handler).
2.  Validating the ``POST /folders`` body before any remote call is made.
3.  Running the archive pipeline for the request under a fresh request id.
4.  Mapping the outcome onto the JSON responses callers rely on, without ever
    leaking internal error detail.
"""

import json
import os
import uuid
from functools import lru_cache

import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.event_handler import APIGatewayRestResolver, Response, content_types
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext

from .clients import S3Client, build_boto3_client
from .config import get_config
from .core import PipelineCoordinator
from .exceptions import (
    ConfigurationError,
    FolderArchiverError,
    NoObjectsFoundError,
    get_error_context,
)
from .schemas import ApiResponseBody, FolderArchiveRequest

# --- Powertools Components ---
# Service name and log level come from POWERTOOLS_* variables at import time;
# the configured LOG_LEVEL is applied once the configuration is loaded.
logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="FolderArchiver")
app = APIGatewayRestResolver()

MISSING_PARAMETERS_MESSAGE = "Missing required parameters"
NO_OBJECTS_MESSAGE = "No objects found"
INTERNAL_ERROR_MESSAGE = "Internal server error"
SUCCESS_MESSAGE = "Files processed successfully"


@lru_cache(maxsize=1)
def get_coordinator() -> PipelineCoordinator:
    """
    Builds the pipeline once per execution environment. The configuration and
    the boto3 client are created here and injected, never read from globals.
    """
    config = get_config()
    logger.setLevel(config.log_level)
    s3_client = S3Client(s3_client=build_boto3_client(config))
    return PipelineCoordinator(config, s3_client)


def _environment_name() -> str:
    """Metrics dimension value; available even when the configuration is invalid."""
    try:
        return get_config().environment
    except ConfigurationError:
        return os.getenv("ENVIRONMENT") or "unknown"


def _json_response(status_code: int, body: ApiResponseBody) -> Response:
    return Response(
        status_code=status_code,
        content_type=content_types.APPLICATION_JSON,
        body=json.dumps(body),
    )


def error_response(status_code: int, message: str, request_id: str | None = None) -> Response:
    body: ApiResponseBody = {"status": "error", "message": message}
    if request_id:
        body = {"requestId": request_id, **body}
    return _json_response(status_code, body)


def _parse_request() -> FolderArchiveRequest | None:
    try:
        payload = app.current_event.json_body
    except (TypeError, ValueError):
        payload = None

    try:
        return FolderArchiveRequest.model_validate(payload if payload is not None else {})
    except pydantic.ValidationError as e:
        logger.warning(
            "Rejected request with invalid parameters",
            extra={"invalid_fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
        )
        return None


@app.post("/folders")
@tracer.capture_method
def create_folder_archive() -> Response:
    """Archives every object under ``sourceKey`` into ``destinationKey``."""
    request = _parse_request()
    if request is None:
        metrics.add_metric(name="InvalidRequests", unit=MetricUnit.Count, value=1)
        return error_response(400, MISSING_PARAMETERS_MESSAGE)

    request_id = str(uuid.uuid4())
    logger.append_keys(request_id=request_id)
    logger.info(
        "Starting folder archive",
        extra={"source_prefix": request.source_key, "destination_key": request.destination_key},
    )

    metrics.add_dimension(name="environment", value=_environment_name())

    try:
        coordinator = get_coordinator()
        result = coordinator.run(
            request.source_key, request.destination_key, request_id=request_id
        )

    except NoObjectsFoundError as e:
        metrics.add_metric(name="EmptyPrefixRequests", unit=MetricUnit.Count, value=1)
        logger.warning("No objects to archive", extra={"error": get_error_context(e)})
        return error_response(400, NO_OBJECTS_MESSAGE, request_id)

    except FolderArchiverError as e:
        metrics.add_metric(name="FailedRuns", unit=MetricUnit.Count, value=1)
        logger.error("Archive run failed", extra={"error": get_error_context(e)})
        return error_response(500, INTERNAL_ERROR_MESSAGE, request_id)

    except Exception:
        metrics.add_metric(name="FailedRuns", unit=MetricUnit.Count, value=1)
        logger.exception("Unexpected error during archive run")
        return error_response(500, INTERNAL_ERROR_MESSAGE, request_id)

    finally:
        logger.remove_keys(["request_id"])

    metrics.add_metric(name="ArchivedObjects", unit=MetricUnit.Count, value=result.object_count)
    metrics.add_metric(name="SkippedObjects", unit=MetricUnit.Count, value=result.skipped_count)
    metrics.add_metric(name="UploadedParts", unit=MetricUnit.Count, value=result.part_count)
    metrics.add_metric(name="ArchiveBytes", unit=MetricUnit.Bytes, value=result.archive_bytes)
    if result.single_shot:
        metrics.add_metric(name="SingleShotUploads", unit=MetricUnit.Count, value=1)

    return _json_response(
        200,
        {"status": "success", "message": SUCCESS_MESSAGE, "requestId": request_id},
    )


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_REST)
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict:
    """Main Lambda handler for API Gateway REST events."""
    return app.resolve(event, context)
