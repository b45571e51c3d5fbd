# src/folder_archiver/core.py

"""
Core business logic for archiving an S3 prefix into a single ZIP object.

The main entry point, `PipelineCoordinator.run`, wires the stages together:

    list_all -> fetch_all (bounded pool) -> ZipArchiveEncoder -> ByteChannel
             -> ChunkingUploadSink (multipart upload)

Data only flows forward. Completion and failure flow back: the coordinator
waits for every fetch before finalizing the archive, waits for the sink to
complete the upload, and on any failure cancels the stream and aborts the
multipart session so that no upload is left open.
"""

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor

from .archive import ByteChannel, ZipArchiveEncoder
from .clients import S3Client
from .config import AppConfig
from .exceptions import ArchiveStreamClosedError, FolderArchiverError, NoObjectsFoundError
from .fetching import ObjectFetcher, fetch_all
from .listing import list_all, select_archive_candidates
from .schemas import PipelineResult, PipelineRun, PipelineState
from .uploading import ChunkingUploadSink, UploadOutcome

logger = logging.getLogger(__name__)


class PipelineCoordinator:
    """
    Runs one archive job per call to ``run``. Holds only immutable
    configuration and the shared S3 client, so it can be reused across
    invocations.
    """

    def __init__(self, config: AppConfig, s3_client: S3Client):
        self._config = config
        self._s3 = s3_client

    def run(
        self,
        source_prefix: str,
        destination_key: str,
        request_id: str | None = None,
    ) -> PipelineResult:
        """
        Archives every object under *source_prefix* in the source bucket to
        *destination_key* in the destination bucket.

        Raises NoObjectsFoundError when nothing is worth archiving, and the
        ListingError, FetchError or UploadError that ended the run otherwise.
        """
        run = PipelineRun(
            request_id=request_id or str(uuid.uuid4()),
            source_prefix=source_prefix,
            destination_key=destination_key,
        )
        try:
            return self._execute(run)
        except FolderArchiverError as e:
            if e.correlation_id is None:
                e.correlation_id = run.request_id
            self._transition(run, PipelineState.FAILED)
            raise
        except Exception:
            self._transition(run, PipelineState.FAILED)
            raise

    def _execute(self, run: PipelineRun) -> PipelineResult:
        config = self._config

        self._transition(run, PipelineState.LISTING)
        listing = list_all(
            self._s3, config.source_bucket, run.source_prefix, page_size=config.list_page_size
        )
        candidates, skipped = select_archive_candidates(listing)
        logger.info(
            "Selected objects for archive",
            extra={
                "request_id": run.request_id,
                "listed": len(listing),
                "candidates": len(candidates),
                "skipped": len(skipped),
            },
        )
        if not candidates:
            raise NoObjectsFoundError(
                config.source_bucket, run.source_prefix, context={"listed": len(listing)}
            )

        channel = ByteChannel(max_chunks=config.stream_buffer_chunks)
        sink = ChunkingUploadSink(
            self._s3,
            config.destination_bucket,
            run.destination_key,
            part_size=config.part_size_bytes,
            upload_concurrency=config.upload_concurrency,
        )
        sink.open()
        encoder = ZipArchiveEncoder(channel)
        fetcher = ObjectFetcher(
            self._s3,
            config.source_bucket,
            ranged_threshold=config.ranged_fetch_threshold_bytes,
            range_window=config.range_window_bytes,
        )

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="archive-upload") as consumer_pool:
            consumer = consumer_pool.submit(sink.consume, channel)
            try:
                self._transition(run, PipelineState.FETCHING_ENCODING)
                summary = fetch_all(
                    fetcher, candidates, encoder.append_object, concurrency=config.fetch_concurrency
                )
                if summary.fetched == 0:
                    raise NoObjectsFoundError(
                        config.source_bucket,
                        run.source_prefix,
                        context={"listed": len(listing), "empty_bodies": len(summary.skipped_keys)},
                    )

                # Every append has returned; the footer can be written now.
                self._transition(run, PipelineState.FINALIZING)
                encoder.finalize()
                outcome: UploadOutcome = consumer.result()
            except BaseException as exc:
                channel.cancel()
                encoder.abort()
                upload_error = self._wait_for_consumer(consumer)
                sink.abort()
                # Producers only see a closed stream because the sink failed first.
                if isinstance(exc, ArchiveStreamClosedError) and upload_error is not None:
                    raise upload_error from exc
                raise

        self._transition(run, PipelineState.DONE)
        result = PipelineResult(
            request_id=run.request_id,
            object_count=summary.fetched,
            skipped_count=len(skipped) + len(summary.skipped_keys),
            part_count=outcome.part_count,
            archive_bytes=outcome.archive_bytes,
            single_shot=outcome.single_shot,
            duration_seconds=round(run.elapsed_seconds, 3),
        )
        logger.info(
            "Archive uploaded",
            extra={
                "request_id": run.request_id,
                "destination_bucket": config.destination_bucket,
                "destination_key": run.destination_key,
                "objects": result.object_count,
                "parts": result.part_count,
                "archive_bytes": result.archive_bytes,
                "single_shot": result.single_shot,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    @staticmethod
    def _wait_for_consumer(consumer: Future) -> BaseException | None:
        """Waits for the sink to stop and returns its own failure, if any."""
        try:
            consumer.result()
        except ArchiveStreamClosedError:
            # The sink only saw the cancellation issued by the coordinator.
            return None
        except BaseException as e:
            return e
        return None

    @staticmethod
    def _transition(run: PipelineRun, state: PipelineState) -> None:
        previous = run.state
        run.state = state
        log = logger.error if state is PipelineState.FAILED else logger.info
        log(
            f"Pipeline {previous.value} -> {state.value}",
            extra=run.log_extra(),
        )
