# src/folder_archiver/exceptions.py

"""
Shared custom exceptions for the Folder Archiver service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- FolderArchiverError (base)
  - ValidationError          -> HTTP 400
  - ConfigurationError
  - NoObjectsFoundError      -> HTTP 400
  - S3Error
    - ListingError           -> HTTP 500
    - FetchError             -> HTTP 500, aborts the upload session
    - UploadError            -> HTTP 500, aborts the upload session
  - ArchiveError
    - ArchiveStreamClosedError

Every remote failure is fatal to the run; nothing here is retried.
"""

from typing import Any, Dict, Optional


class FolderArchiverError(Exception):
    """Base exception for all Folder Archiver service errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
        }


# === Request / Configuration Errors ===

class ValidationError(FolderArchiverError):
    """Raised when request input or an object key fails validation."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "VALIDATION_ERROR"
        super().__init__(message, **kwargs)


class ConfigurationError(FolderArchiverError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


class NoObjectsFoundError(FolderArchiverError):
    """Raised when a source prefix holds nothing worth archiving."""

    def __init__(self, bucket: str, prefix: str, **kwargs):
        message = f"No objects found under s3://{bucket}/{prefix}"
        context = {"bucket": bucket, "prefix": prefix}
        context.update(kwargs.pop("context", {}))
        super().__init__(message, error_code="NO_OBJECTS_FOUND", context=context, **kwargs)


# === S3-Related Errors ===

class S3Error(FolderArchiverError):
    """Base class for S3-related errors."""
    pass


class ListingError(S3Error):
    """Raised when a page of the source listing could not be retrieved."""

    def __init__(self, bucket: str, prefix: str, reason: str, **kwargs):
        message = f"Failed to list s3://{bucket}/{prefix}: {reason}"
        context = {"bucket": bucket, "prefix": prefix}
        context.update(kwargs.pop("context", {}))
        kwargs.setdefault("error_code", "S3_LISTING_FAILED")
        super().__init__(message, context=context, **kwargs)


class FetchError(S3Error):
    """Raised when a source object could not be downloaded."""

    def __init__(self, bucket: str, key: str, reason: str, **kwargs):
        message = f"Failed to fetch s3://{bucket}/{key}: {reason}"
        context = {"bucket": bucket, "key": key}
        context.update(kwargs.pop("context", {}))
        kwargs.setdefault("error_code", "S3_FETCH_FAILED")
        super().__init__(message, context=context, **kwargs)


class UploadError(S3Error):
    """Raised when a multipart, part or single-shot upload call fails."""

    def __init__(self, operation: str, bucket: str, key: str, reason: str, **kwargs):
        message = f"S3 {operation} failed for s3://{bucket}/{key}: {reason}"
        context = {"operation": operation, "bucket": bucket, "key": key}
        context.update(kwargs.pop("context", {}))
        kwargs.setdefault("error_code", "S3_UPLOAD_FAILED")
        super().__init__(message, context=context, **kwargs)


# === Archive Errors ===

class ArchiveError(FolderArchiverError):
    """Raised when the archive encoder is misused or fails."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "ARCHIVE_ERROR")
        super().__init__(message, **kwargs)


class ArchiveStreamClosedError(ArchiveError):
    """Raised when archive bytes are written to a cancelled or closed stream."""

    def __init__(self, message: str = "Archive output stream is closed", **kwargs):
        kwargs.setdefault("error_code", "ARCHIVE_STREAM_CLOSED")
        super().__init__(message, **kwargs)


# === Utility Functions ===

def get_error_context(error: BaseException) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, FolderArchiverError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
        }
