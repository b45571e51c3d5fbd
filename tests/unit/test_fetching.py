# tests/unit/test_fetching.py

import os
import threading
import time
from unittest.mock import MagicMock

import pytest

from folder_archiver.clients import ObjectRead, S3Client
from folder_archiver.exceptions import FetchError
from folder_archiver.fetching import ObjectFetcher, fetch_all, parse_content_range
from folder_archiver.schemas import FetchedObject, ObjectDescriptor

KIB = 1024


def _fetcher(s3_client, threshold=10 * KIB, window=4 * KIB) -> ObjectFetcher:
    return ObjectFetcher(s3_client, "source-bucket", ranged_threshold=threshold, range_window=window)


def test_parse_content_range():
    assert parse_content_range("bytes 0-1048575/5242880") == (0, 1048575, 5242880)
    with pytest.raises(ValueError):
        parse_content_range("bytes */100")


class TestObjectFetcher:
    def test_small_object_uses_single_request(self, fake_s3, s3_client):
        fake_s3.put("source-bucket", "in/small.txt", b"small")

        fetched = _fetcher(s3_client).fetch(ObjectDescriptor(key="in/small.txt", size=5))

        assert fetched == FetchedObject(name="small.txt", data=b"small", key="in/small.txt")
        assert fake_s3.get_calls == [{"Key": "in/small.txt", "Range": None}]

    def test_ranged_reassembly_matches_source(self, fake_s3, s3_client):
        """N fragments are reassembled in order and the loop stops on the last byte."""
        data = os.urandom(4 * KIB * 5 + 123)
        fake_s3.put("source-bucket", "in/large.bin", data)

        fetched = _fetcher(s3_client).fetch(ObjectDescriptor(key="in/large.bin", size=len(data)))

        assert fetched.data == data
        assert fetched.name == "large.bin"
        ranges = [c["Range"] for c in fake_s3.get_calls]
        assert len(ranges) == 6
        assert ranges[0] == "bytes=0-4095"
        assert ranges[-1] == f"bytes={5 * 4 * KIB}-{6 * 4 * KIB - 1}"

    def test_ranged_read_of_exact_window_multiple(self, fake_s3, s3_client):
        data = os.urandom(4 * KIB * 3)
        fake_s3.put("source-bucket", "in/exact.bin", data)

        fetched = _fetcher(s3_client).fetch(ObjectDescriptor(key="in/exact.bin", size=len(data)))

        assert fetched.data == data
        assert len(fake_s3.get_calls) == 3

    def test_ranged_read_stops_on_full_body_response(self):
        client = MagicMock(spec=S3Client)
        client.get_object.return_value = ObjectRead(data=b"whole object", content_range=None)

        data = _fetcher(client).fetch_ranged("in/k")

        assert data == b"whole object"
        client.get_object.assert_called_once()

    def test_ranged_read_rejects_a_range_that_does_not_advance(self):
        client = MagicMock(spec=S3Client)
        client.get_object.return_value = ObjectRead(data=b"abcd", content_range="bytes 0-3/100")

        fetcher = _fetcher(client, window=4)
        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch_ranged("in/k")

        assert exc_info.value.error_code == "S3_RANGE_MISMATCH"
        assert client.get_object.call_count == 2

    def test_ranged_read_rejects_malformed_content_range(self):
        client = MagicMock(spec=S3Client)
        client.get_object.return_value = ObjectRead(data=b"abcd", content_range="garbage")

        with pytest.raises(FetchError) as exc_info:
            _fetcher(client).fetch_ranged("in/k")

        assert exc_info.value.error_code == "S3_RANGE_INVALID"

    def test_empty_body_is_a_skip(self):
        client = MagicMock(spec=S3Client)
        client.get_object.return_value = ObjectRead(data=None)

        assert _fetcher(client).fetch(ObjectDescriptor(key="in/gone.txt", size=3)) is None
        assert _fetcher(client).fetch(ObjectDescriptor(key="in/gone.bin", size=50 * KIB)) is None

    def test_empty_body_mid_ranged_read_is_fatal(self):
        client = MagicMock(spec=S3Client)
        client.get_object.side_effect = [
            ObjectRead(data=b"abcd", content_range="bytes 0-3/8"),
            ObjectRead(data=b""),
        ]

        with pytest.raises(FetchError) as exc_info:
            _fetcher(client, window=4).fetch_ranged("in/k")

        assert exc_info.value.error_code == "S3_RANGE_EMPTY"

    def test_store_errors_propagate(self, fake_s3, s3_client):
        fake_s3.put("source-bucket", "in/secret.txt", b"x")
        fake_s3.fail_get_keys.add("in/secret.txt")

        with pytest.raises(FetchError) as exc_info:
            _fetcher(s3_client).fetch(ObjectDescriptor(key="in/secret.txt", size=1))

        assert exc_info.value.error_code == "S3_ACCESS_DENIED"


class TestFetchAll:
    def test_every_object_is_delivered_within_the_concurrency_bound(self, s3_client, fake_s3):
        fake_s3.get_delay = 0.01
        descriptors = []
        for i in range(60):
            fake_s3.put("source-bucket", f"in/{i}.txt", f"payload-{i}".encode())
            descriptors.append(ObjectDescriptor(key=f"in/{i}.txt", size=len(f"payload-{i}")))

        delivered: dict[str, bytes] = {}
        lock = threading.Lock()

        def collect(fetched: FetchedObject) -> None:
            with lock:
                delivered[fetched.name] = fetched.data

        summary = fetch_all(_fetcher(s3_client), descriptors, collect, concurrency=5)

        assert summary.fetched == 60
        assert summary.skipped_keys == []
        assert delivered == {f"{i}.txt": f"payload-{i}".encode() for i in range(60)}
        assert 1 < fake_s3.max_active_gets <= 5

    def test_skips_are_counted_not_delivered(self):
        client = MagicMock(spec=S3Client)
        client.get_object.side_effect = lambda bucket, key, byte_range=None: ObjectRead(
            data=None if key.endswith("empty") else b"data"
        )
        delivered = []

        summary = fetch_all(
            _fetcher(client),
            [ObjectDescriptor(key="in/empty", size=1), ObjectDescriptor(key="in/full", size=1)],
            delivered.append,
            concurrency=2,
        )

        assert [f.name for f in delivered] == ["full"]
        assert summary.skipped_keys == ["in/empty"]
        assert summary.bytes_fetched == 4

    def test_first_failure_is_raised_and_stops_remaining_work(self, s3_client, fake_s3):
        descriptors = []
        for i in range(40):
            fake_s3.put("source-bucket", f"in/{i}.txt", b"x")
            descriptors.append(ObjectDescriptor(key=f"in/{i}.txt", size=1))
        fake_s3.fail_get_keys.add("in/0.txt")
        fake_s3.get_delay = 0.02

        with pytest.raises(FetchError):
            fetch_all(_fetcher(s3_client), descriptors, lambda fetched: None, concurrency=2)

        assert len(fake_s3.get_calls) < 40

    def test_failing_callback_is_fatal(self, s3_client, fake_s3):
        fake_s3.put("source-bucket", "in/a.txt", b"a")

        def explode(fetched):
            raise RuntimeError("encoder broke")

        with pytest.raises(RuntimeError, match="encoder broke"):
            fetch_all(_fetcher(s3_client), [ObjectDescriptor(key="in/a.txt", size=1)], explode)

    def test_returns_only_after_every_fetch_resolved(self, s3_client, fake_s3):
        fake_s3.get_delay = 0.02
        descriptors = []
        for i in range(10):
            fake_s3.put("source-bucket", f"in/{i}.txt", b"x")
            descriptors.append(ObjectDescriptor(key=f"in/{i}.txt", size=1))
        finished = []

        def slow_append(fetched):
            time.sleep(0.01)
            finished.append(fetched.name)

        fetch_all(_fetcher(s3_client), descriptors, slow_append, concurrency=3)

        assert len(finished) == 10

    def test_rejects_non_positive_concurrency(self, s3_client):
        with pytest.raises(ValueError):
            fetch_all(_fetcher(s3_client), [], lambda f: None, concurrency=0)
