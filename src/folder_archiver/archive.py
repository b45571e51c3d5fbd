# src/folder_archiver/archive.py

"""
Streaming ZIP encoding.

``zipfile`` writes to a non-seekable, write-only file object here, so every
entry is emitted with a trailing data descriptor and the archive never has to
be rewound. Bytes leave the encoder through a bounded ``ByteChannel``; when
the uploader falls behind, the channel fills and ``append`` blocks, which in
turn holds back the fetch workers.
"""

import logging
import threading
import zipfile
from collections import deque
from typing import Iterator

from .exceptions import ArchiveError, ArchiveStreamClosedError
from .schemas import FetchedObject

logger = logging.getLogger(__name__)

# Entry data is fed to the compressor in slices of this size so that no
# single output chunk grows with the size of the source object.
WRITE_SLICE_BYTES = 1_048_576


class ByteChannel:
    """
    Bounded FIFO of byte chunks between one or more producers and a single
    consumer.

    ``close`` marks the end of the stream: the consumer still drains every
    queued chunk before it sees the end. ``cancel`` discards queued chunks and
    makes every blocked or future ``put``/``get`` raise.
    """

    def __init__(self, max_chunks: int = 16):
        if max_chunks <= 0:
            raise ValueError("max_chunks must be positive")
        self._max_chunks = max_chunks
        self._chunks: deque[bytes] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def put(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._cond:
            while len(self._chunks) >= self._max_chunks and not self._cancelled:
                self._cond.wait()
            if self._cancelled:
                raise ArchiveStreamClosedError("Archive output stream was cancelled")
            if self._closed:
                raise ArchiveStreamClosedError()
            self._chunks.append(chunk)
            self._cond.notify_all()

    def get(self) -> bytes | None:
        """Returns the next chunk, or None once the stream is closed and drained."""
        with self._cond:
            while not self._chunks and not self._closed and not self._cancelled:
                self._cond.wait()
            if self._cancelled:
                raise ArchiveStreamClosedError("Archive output stream was cancelled")
            if self._chunks:
                chunk = self._chunks.popleft()
                self._cond.notify_all()
                return chunk
            return None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def cancel(self) -> None:
        with self._cond:
            self._cancelled = True
            self._chunks.clear()
            self._cond.notify_all()

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.get()
            if chunk is None:
                return
            yield chunk


class _ChannelWriter:
    """
    Write-only file object over a ByteChannel. Without ``tell``/``seek``,
    ``zipfile`` treats it as unseekable.
    """

    def __init__(self, channel: ByteChannel):
        self._channel = channel
        self.bytes_written = 0

    def write(self, data) -> int:
        chunk = bytes(data)
        if chunk:
            self._channel.put(chunk)
            self.bytes_written += len(chunk)
        return len(chunk)

    def flush(self) -> None:
        pass


class ZipArchiveEncoder:
    """
    Appends named entries to a deflated ZIP stream.

    ``append`` may be called from many threads; entries are written one at a
    time. ``finalize`` writes the central directory and ends the stream, and
    no append is accepted afterwards.
    """

    def __init__(
        self,
        channel: ByteChannel,
        compression: int = zipfile.ZIP_DEFLATED,
        compresslevel: int | None = None,
    ):
        self._channel = channel
        self._writer = _ChannelWriter(channel)
        self._zip = zipfile.ZipFile(
            self._writer,  # type: ignore[arg-type]
            mode="w",
            compression=compression,
            compresslevel=compresslevel,
            allowZip64=True,
        )
        self._compression = compression
        self._lock = threading.Lock()
        self._finalized = False
        self.entry_count = 0

    @property
    def bytes_written(self) -> int:
        return self._writer.bytes_written

    @property
    def finalized(self) -> bool:
        return self._finalized

    def append(self, name: str, data: bytes, source_key: str | None = None) -> None:
        with self._lock:
            if self._finalized:
                raise ArchiveError(
                    "Cannot append to a finalized archive",
                    error_code="ARCHIVE_FINALIZED",
                    context={"entry_name": name},
                )

            zinfo = zipfile.ZipInfo(name)
            zinfo.compress_type = self._compression
            zinfo.external_attr = 0o644 << 16
            # zipfile decides on ZIP64 headers from the declared size
            zinfo.file_size = len(data)

            view = memoryview(data)
            with self._zip.open(zinfo, mode="w") as dest:
                for offset in range(0, len(view), WRITE_SLICE_BYTES):
                    dest.write(view[offset : offset + WRITE_SLICE_BYTES])

            self.entry_count += 1
            logger.debug(
                "Appended archive entry",
                extra={"entry_name": name, "key": source_key, "size": len(data)},
            )

    def append_object(self, fetched: FetchedObject) -> None:
        self.append(fetched.name, fetched.data, source_key=fetched.key)

    def finalize(self) -> None:
        with self._lock:
            if self._finalized:
                raise ArchiveError(
                    "Archive already finalized", error_code="ARCHIVE_FINALIZED"
                )
            self._finalized = True
            self._zip.close()
            self._channel.close()
        logger.info(
            "Archive finalized",
            extra={"entries": self.entry_count, "archive_bytes": self.bytes_written},
        )

    def abort(self) -> None:
        """
        Releases the ZIP writer of a failed run. The channel must already be
        cancelled; the central directory it would receive is dropped, and the
        writer no longer has anything to flush when it is garbage collected.
        """
        with self._lock:
            if self._finalized:
                return
            self._finalized = True
            try:
                self._zip.close()
            except ArchiveError as e:
                logger.debug(
                    "Discarded archive trailer of an aborted run",
                    extra={"entries": self.entry_count, "error_code": e.error_code},
                )
