# src/folder_archiver/fetching.py

"""
Bounded-concurrency download of source objects.

Each worker downloads one object completely, either with a single GetObject
or with sequential ranged reads for large objects, and hands the bytes to the
archive encoder itself. Append order is therefore completion order.
"""

import logging
import re
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .clients import S3Client
from .exceptions import FetchError
from .schemas import FetchedObject, ObjectDescriptor

logger = logging.getLogger(__name__)

DEFAULT_FETCH_CONCURRENCY = 20

_CONTENT_RANGE = re.compile(r"^bytes (\d+)-(\d+)/(\d+)$")


def parse_content_range(value: str) -> tuple[int, int, int]:
    """Parses ``bytes first-last/total`` into integers. Raises ValueError otherwise."""
    match = _CONTENT_RANGE.match(value.strip())
    if not match:
        raise ValueError(f"Unsupported Content-Range: {value!r}")
    first, last, total = (int(group) for group in match.groups())
    return first, last, total


class ObjectFetcher:
    """Downloads one source object at a time; safe to share between threads."""

    def __init__(
        self,
        s3_client: S3Client,
        bucket: str,
        ranged_threshold: int,
        range_window: int,
    ):
        if range_window <= 0:
            raise ValueError("range_window must be positive")
        self._s3 = s3_client
        self._bucket = bucket
        self._ranged_threshold = ranged_threshold
        self._range_window = range_window

    def fetch(self, descriptor: ObjectDescriptor) -> FetchedObject | None:
        """
        Returns the object's bytes with its entry name, or None when the store
        sent no content (logged as a skip).
        """
        if descriptor.size >= self._ranged_threshold:
            data = self.fetch_ranged(descriptor.key)
            strategy = "ranged"
        else:
            data = self.fetch_whole(descriptor.key)
            strategy = "whole"

        if not data:
            logger.warning(
                "Object returned no content. Skipping.",
                extra={"key": descriptor.key, "strategy": strategy},
            )
            return None

        logger.debug(
            "Fetched object",
            extra={"key": descriptor.key, "size": len(data), "strategy": strategy},
        )
        return FetchedObject(name=descriptor.basename, data=data, key=descriptor.key)

    def fetch_whole(self, key: str) -> bytes | None:
        return self._s3.get_object(self._bucket, key).data

    def fetch_ranged(self, key: str) -> bytes | None:
        """
        Reads *key* in windows of ``range_window`` bytes. Each request starts
        one past the end the previous response reported, and the loop ends
        when that end is the last byte of the object.
        """
        fragments: list[bytes] = []
        start = 0

        while True:
            read = self._s3.get_object(
                self._bucket, key, byte_range=(start, start + self._range_window - 1)
            )
            if not read.data:
                if not fragments:
                    return None
                raise FetchError(
                    self._bucket,
                    key,
                    "empty body in the middle of a ranged read",
                    error_code="S3_RANGE_EMPTY",
                    context={"offset": start},
                )

            fragments.append(read.data)

            # A 200 without Content-Range carries the whole object
            if read.content_range is None:
                break

            try:
                first, last, total = parse_content_range(read.content_range)
            except ValueError as e:
                raise FetchError(
                    self._bucket,
                    key,
                    str(e),
                    error_code="S3_RANGE_INVALID",
                    context={"content_range": read.content_range},
                ) from e

            if first != start or last < first or len(read.data) != last - first + 1:
                raise FetchError(
                    self._bucket,
                    key,
                    "ranged response does not match the requested window",
                    error_code="S3_RANGE_MISMATCH",
                    context={
                        "requested_start": start,
                        "content_range": read.content_range,
                        "received_bytes": len(read.data),
                    },
                )

            if last == total - 1:
                break
            start = last + 1

        logger.debug(
            "Reassembled ranged read",
            extra={"key": key, "fragments": len(fragments)},
        )
        return b"".join(fragments)


@dataclass
class FetchSummary:
    fetched: int = 0
    bytes_fetched: int = 0
    skipped_keys: list[str] = field(default_factory=list)


def fetch_all(
    fetcher: ObjectFetcher,
    descriptors: Sequence[ObjectDescriptor],
    on_fetched: Callable[[FetchedObject], None],
    concurrency: int = DEFAULT_FETCH_CONCURRENCY,
) -> FetchSummary:
    """
    Fetches every descriptor with at most *concurrency* downloads in flight,
    calling *on_fetched* from the worker as each object completes.

    Returns only after every scheduled fetch has resolved. The first failure
    cancels queued work, lets in-flight workers finish without appending,
    and is re-raised.
    """
    if concurrency <= 0:
        raise ValueError("concurrency must be positive")

    summary = FetchSummary()
    summary_lock = threading.Lock()
    stop = threading.Event()

    def _fetch_one(descriptor: ObjectDescriptor) -> None:
        if stop.is_set():
            return
        fetched = fetcher.fetch(descriptor)
        if fetched is None:
            with summary_lock:
                summary.skipped_keys.append(descriptor.key)
            return
        if stop.is_set():
            return
        on_fetched(fetched)
        with summary_lock:
            summary.fetched += 1
            summary.bytes_fetched += fetched.size

    failure: Future | None = None
    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="fetch") as pool:
        futures = [pool.submit(_fetch_one, d) for d in descriptors]
        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        failure = next((f for f in done if f.exception() is not None), None)
        if failure is not None:
            stop.set()
            for future in not_done:
                future.cancel()
            logger.error(
                "Fetch failed; cancelling remaining downloads",
                extra={"pending": len(not_done)},
            )
        # Leaving the block joins any worker that was already running.

    if failure is not None:
        raise failure.exception()  # type: ignore[misc]

    logger.info(
        "All fetches resolved",
        extra={
            "fetched": summary.fetched,
            "skipped": len(summary.skipped_keys),
            "bytes_fetched": summary.bytes_fetched,
        },
    )
    return summary
