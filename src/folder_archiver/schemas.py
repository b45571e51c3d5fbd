# In src/folder_archiver/schemas.py

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator

# --- Static Type Hinting (for mypy and IDEs) ---


class CompletedPartDict(TypedDict):
    """The shape S3 expects for each entry of CompleteMultipartUpload."""

    PartNumber: int
    ETag: str


class ApiResponseBody(TypedDict, total=False):
    status: str
    message: str
    requestId: str


# --- Runtime Validation (using Pydantic) ---


class FolderArchiveRequest(BaseModel):
    """
    Body of ``POST /folders``. Both keys are required and must not be blank.
    """

    model_config = ConfigDict(populate_by_name=True)

    source_key: str = Field(..., alias="sourceKey", min_length=1)
    destination_key: str = Field(..., alias="destinationKey", min_length=1)

    @field_validator("source_key", "destination_key")
    @classmethod
    def reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class ObjectDescriptor(BaseModel):
    """One entry of the source listing."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)

    @property
    def basename(self) -> str:
        return self.key[self.key.rfind("/") + 1 :]


# --- Pipeline value objects ---


@dataclass(slots=True)
class FetchedObject:
    """Fully reassembled bytes of one source object, ready to append."""

    name: str
    data: bytes
    key: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class UploadPart:
    part_number: int
    size: int
    etag: str

    def as_completed_part(self) -> CompletedPartDict:
        return {"PartNumber": self.part_number, "ETag": self.etag}


class PipelineState(str, enum.Enum):
    IDLE = "Idle"
    LISTING = "Listing"
    FETCHING_ENCODING = "FetchingEncoding"
    FINALIZING = "Finalizing"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(slots=True)
class PipelineRun:
    """Correlation scope of one invocation. Lives only as long as the request."""

    request_id: str
    source_prefix: str
    destination_key: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: PipelineState = PipelineState.IDLE
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started_monotonic

    def log_extra(self) -> dict:
        return {
            "request_id": self.request_id,
            "source_prefix": self.source_prefix,
            "destination_key": self.destination_key,
            "state": self.state.value,
        }


@dataclass(frozen=True, slots=True)
class PipelineResult:
    request_id: str
    object_count: int
    skipped_count: int
    part_count: int
    archive_bytes: int
    single_shot: bool
    duration_seconds: float
