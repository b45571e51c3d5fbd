# src/folder_archiver/uploading.py

"""
Chunked re-upload of the archive stream.

A single consumer loop owns the accumulation buffer and the part counter.
Completed parts are handed to a small, bounded pool of upload workers; once
that pool is saturated the consumer stops draining the ByteChannel, which
propagates backpressure all the way to the fetch workers.
"""

import enum
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from .archive import ByteChannel
from .clients import S3Client
from .exceptions import UploadError
from .schemas import CompletedPartDict, UploadPart

logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE = 5 * 1_048_576
DEFAULT_UPLOAD_CONCURRENCY = 4
MAX_PART_NUMBER = 10_000


class UploadState(str, enum.Enum):
    OPEN = "Open"
    COMPLETING = "Completing"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


_ALLOWED_TRANSITIONS: dict[UploadState, set[UploadState]] = {
    UploadState.OPEN: {UploadState.COMPLETING, UploadState.ABORTED},
    UploadState.COMPLETING: {UploadState.COMPLETED, UploadState.ABORTED},
    UploadState.COMPLETED: set(),
    UploadState.ABORTED: set(),
}


@dataclass
class UploadSession:
    """One multipart upload. It reaches exactly one terminal state."""

    upload_id: str
    bucket: str
    key: str
    parts: list[UploadPart] = field(default_factory=list)
    state: UploadState = UploadState.OPEN
    # Set when the remote abort failed and the upload may still be open.
    abort_failed: bool = False

    @property
    def is_terminal(self) -> bool:
        return not _ALLOWED_TRANSITIONS[self.state]

    def transition(self, new_state: UploadState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise UploadError(
                "SessionTransition",
                self.bucket,
                self.key,
                f"cannot move from {self.state.value} to {new_state.value}",
                error_code="INVALID_SESSION_TRANSITION",
                context={"upload_id": self.upload_id},
            )
        self.state = new_state

    def completed_parts(self) -> list[CompletedPartDict]:
        """Parts in ascending part-number order, as CompleteMultipartUpload wants them."""
        return [p.as_completed_part() for p in sorted(self.parts, key=lambda p: p.part_number)]


@dataclass(frozen=True, slots=True)
class UploadOutcome:
    part_count: int
    archive_bytes: int
    single_shot: bool


class ChunkingUploadSink:
    """
    Slices the archive byte stream into parts and uploads them under one
    multipart session, falling back to a single PutObject when the whole
    stream never filled one part.
    """

    def __init__(
        self,
        s3_client: S3Client,
        bucket: str,
        key: str,
        part_size: int = DEFAULT_PART_SIZE,
        upload_concurrency: int = DEFAULT_UPLOAD_CONCURRENCY,
    ):
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        if upload_concurrency <= 0:
            raise ValueError("upload_concurrency must be positive")
        self._s3 = s3_client
        self._bucket = bucket
        self._key = key
        self._part_size = part_size
        self._upload_concurrency = upload_concurrency
        self._parts_lock = threading.Lock()
        self.session: UploadSession | None = None

    def open(self) -> UploadSession:
        """Creates the multipart upload. Must be called before ``consume``."""
        upload_id = self._s3.create_multipart_upload(self._bucket, self._key)
        self.session = UploadSession(upload_id=upload_id, bucket=self._bucket, key=self._key)
        logger.info(
            "Opened multipart upload",
            extra={"bucket": self._bucket, "key": self._key, "upload_id": upload_id},
        )
        return self.session

    def consume(self, channel: ByteChannel) -> UploadOutcome:
        """
        Drains *channel* until it is closed, uploading each full part as it
        is cut. Any failure cancels the channel, aborts the session and is
        re-raised.
        """
        session = self._require_open_session()
        buffer = bytearray()
        archive_bytes = 0
        next_part_number = 1
        futures: list[Future] = []
        in_flight = threading.BoundedSemaphore(self._upload_concurrency)
        pool = ThreadPoolExecutor(
            max_workers=self._upload_concurrency, thread_name_prefix="upload-part"
        )

        try:
            for chunk in channel:
                buffer += chunk
                archive_bytes += len(chunk)
                if len(buffer) >= self._part_size:
                    self._submit_part(pool, in_flight, futures, next_part_number, bytes(buffer))
                    next_part_number += 1
                    buffer = bytearray()

            if next_part_number == 1:
                self._upload_single_shot(bytes(buffer))
                return UploadOutcome(part_count=0, archive_bytes=archive_bytes, single_shot=True)

            if buffer:
                self._submit_part(pool, in_flight, futures, next_part_number, bytes(buffer))
                next_part_number += 1

            wait(futures)
            self._raise_for_failed_parts(futures)
            self._complete()
            return UploadOutcome(
                part_count=len(session.parts), archive_bytes=archive_bytes, single_shot=False
            )

        except BaseException:
            channel.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            self.abort()
            raise
        finally:
            pool.shutdown(wait=True)

    def abort(self) -> None:
        """
        Best-effort abort of an open session. Never raises. A failed remote
        abort leaves the session in its current state with ``abort_failed``
        set, and is not attempted again.
        """
        session = self.session
        if session is None or session.is_terminal or session.abort_failed:
            return
        try:
            self._abort_session(session)
        except UploadError as e:
            session.abort_failed = True
            logger.error(
                "Failed to abort multipart upload; it must be cleaned up manually",
                extra={
                    "upload_id": session.upload_id,
                    "bucket": session.bucket,
                    "key": session.key,
                    "state": session.state.value,
                    "error_code": e.error_code,
                },
            )

    # --- Internals ---

    def _require_open_session(self) -> UploadSession:
        if self.session is None or self.session.state is not UploadState.OPEN:
            raise UploadError(
                "Consume",
                self._bucket,
                self._key,
                "no open multipart session",
                error_code="NO_OPEN_SESSION",
            )
        return self.session

    def _submit_part(
        self,
        pool: ThreadPoolExecutor,
        in_flight: threading.BoundedSemaphore,
        futures: list[Future],
        part_number: int,
        body: bytes,
    ) -> None:
        if part_number > MAX_PART_NUMBER:
            raise UploadError(
                "UploadPart",
                self._bucket,
                self._key,
                f"archive needs more than {MAX_PART_NUMBER} parts",
                error_code="TOO_MANY_PARTS",
                context={"part_size": self._part_size},
            )
        self._raise_for_failed_parts(futures)
        # Blocks the consumer while the pool is saturated.
        in_flight.acquire()
        try:
            self._raise_for_failed_parts(futures)
            futures.append(pool.submit(self._upload_part, in_flight, part_number, body))
        except BaseException:
            in_flight.release()
            raise
        logger.debug(
            "Cut upload part",
            extra={"part_number": part_number, "size": len(body)},
        )

    def _upload_part(
        self, in_flight: threading.BoundedSemaphore, part_number: int, body: bytes
    ) -> UploadPart:
        session = self.session
        assert session is not None
        try:
            etag = self._s3.upload_part(
                session.bucket, session.key, session.upload_id, part_number, body
            )
            part = UploadPart(part_number=part_number, size=len(body), etag=etag)
            with self._parts_lock:
                session.parts.append(part)
            logger.info(
                "Uploaded part",
                extra={"part_number": part_number, "size": len(body), "etag": etag},
            )
            return part
        finally:
            in_flight.release()

    @staticmethod
    def _raise_for_failed_parts(futures: list[Future]) -> None:
        for future in futures:
            if future.done() and not future.cancelled() and future.exception() is not None:
                raise future.exception()  # type: ignore[misc]

    def _complete(self) -> None:
        session = self._require_open_session()
        session.transition(UploadState.COMPLETING)
        parts = session.completed_parts()
        logger.info(
            "Completing multipart upload",
            extra={"upload_id": session.upload_id, "part_count": len(parts)},
        )
        self._s3.complete_multipart_upload(
            session.bucket, session.key, session.upload_id, parts
        )
        session.transition(UploadState.COMPLETED)

    def _upload_single_shot(self, body: bytes) -> None:
        session = self._require_open_session()
        logger.info(
            "Archive smaller than one part; replacing multipart upload with PutObject",
            extra={"upload_id": session.upload_id, "size": len(body)},
        )
        # The provisional session must not stay open, so this abort is not best-effort.
        try:
            self._abort_session(session)
        except UploadError as e:
            session.abort_failed = True
            logger.error(
                "Failed to abort provisional multipart upload; it must be cleaned up manually",
                extra={"upload_id": session.upload_id, "error_code": e.error_code},
            )
            raise
        self._s3.put_object(session.bucket, session.key, body)

    def _abort_session(self, session: UploadSession) -> None:
        logger.warning(
            "Aborting multipart upload",
            extra={"upload_id": session.upload_id, "uploaded_parts": len(session.parts)},
        )
        self._s3.abort_multipart_upload(session.bucket, session.key, session.upload_id)
        # Only a confirmed remote abort makes the session terminal.
        session.transition(UploadState.ABORTED)
