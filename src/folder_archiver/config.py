import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# S3 rejects non-final multipart parts smaller than 5 MiB.
MIN_PART_SIZE_MB = 5
MAX_LIST_PAGE_SIZE = 1000


def _positive_int(name: str, default: str) -> int:
    value = int(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer.")
    return value


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    source_bucket: str
    destination_bucket: str
    environment: str

    # --- Optional Variables with Defaults ---
    service_name: str
    region: str
    access_key_id: str | None
    secret_access_key: str | None
    log_level: str

    # --- Pipeline Tuning ---
    part_size_mb: int
    fetch_concurrency: int
    upload_concurrency: int
    ranged_fetch_threshold_mb: int
    range_window_mb: int
    list_page_size: int
    stream_buffer_chunks: int

    # --- S3 Client Behaviour ---
    s3_operation_timeout_seconds: int
    s3_max_attempts: int

    # --- Derived Properties ---
    @property
    def part_size_bytes(self) -> int:
        return self.part_size_mb * 1_048_576

    @property
    def ranged_fetch_threshold_bytes(self) -> int:
        return self.ranged_fetch_threshold_mb * 1_048_576

    @property
    def range_window_bytes(self) -> int:
        return self.range_window_mb * 1_048_576

    @property
    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            source_bucket = os.environ["BUCKET_NAME"]
            destination_bucket = os.environ["AWS_S3_ZIP_BUCKET_NAME"]
            environment = os.environ["ENVIRONMENT"]
            if not source_bucket or not destination_bucket:
                raise ValueError("Bucket names must not be empty.")

            service_name = os.getenv("SERVICE_NAME", "folder-archiver")
            region = os.getenv("REGION", "ap-south-1")

            # --- Credentials are all-or-nothing; otherwise boto3's chain applies ---
            access_key_id = os.getenv("ACCESS_KEY_ID") or None
            secret_access_key = os.getenv("SECRET_ACCESS_KEY") or None
            if bool(access_key_id) != bool(secret_access_key):
                raise ValueError(
                    "ACCESS_KEY_ID and SECRET_ACCESS_KEY must be set together."
                )

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            # --- Pipeline tuning ---
            part_size_mb = _positive_int("PART_SIZE_MB", "5")
            if part_size_mb < MIN_PART_SIZE_MB:
                raise ValueError(
                    f"PART_SIZE_MB must be at least {MIN_PART_SIZE_MB}."
                )

            fetch_concurrency = _positive_int("FETCH_CONCURRENCY", "20")
            upload_concurrency = _positive_int("UPLOAD_CONCURRENCY", "4")
            ranged_fetch_threshold_mb = _positive_int("RANGED_FETCH_THRESHOLD_MB", "8")
            range_window_mb = _positive_int("RANGE_WINDOW_MB", "5")

            list_page_size = _positive_int("LIST_PAGE_SIZE", str(MAX_LIST_PAGE_SIZE))
            if list_page_size > MAX_LIST_PAGE_SIZE:
                raise ValueError(
                    f"LIST_PAGE_SIZE must not exceed {MAX_LIST_PAGE_SIZE}."
                )

            stream_buffer_chunks = _positive_int("STREAM_BUFFER_CHUNKS", "16")

            # --- S3 client behaviour ---
            s3_operation_timeout_seconds = _positive_int(
                "S3_OPERATION_TIMEOUT_SECONDS", "30"
            )
            s3_max_attempts = _positive_int("S3_MAX_ATTEMPTS", "1")

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            source_bucket=source_bucket,
            destination_bucket=destination_bucket,
            environment=environment,
            service_name=service_name,
            region=region,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            log_level=log_level,
            part_size_mb=part_size_mb,
            fetch_concurrency=fetch_concurrency,
            upload_concurrency=upload_concurrency,
            ranged_fetch_threshold_mb=ranged_fetch_threshold_mb,
            range_window_mb=range_window_mb,
            list_page_size=list_page_size,
            stream_buffer_chunks=stream_buffer_chunks,
            s3_operation_timeout_seconds=s3_operation_timeout_seconds,
            s3_max_attempts=s3_max_attempts,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
