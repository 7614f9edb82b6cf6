"""Tests for streaming uploads through an invoker pool."""

from __future__ import annotations

import threading
import time
from typing import Any, List

import httpx
import pytest

from RangeRelay.cancellation import CancellationToken
from RangeRelay.errors import BadStatusError, CancellationError, NoClientsError, RangeRelayError
from RangeRelay.invoker_pool import HttpInvoker, InvokerPool
from RangeRelay.upload import StreamUploader, UploadPartRequest


class _Sink:
    def __init__(self, reply: Any = True, fail_on: int = -1, delay: float = 0.0) -> None:
        self.reply = reply
        self.fail_on = fail_on
        self.delay = delay
        self.requests: List[UploadPartRequest] = []
        self.lock = threading.Lock()

    def invoke(self, request: UploadPartRequest, **kwargs: Any) -> Any:
        if self.delay:
            time.sleep(self.delay)
        if request.part_index == self.fail_on:
            raise BadStatusError("bad status: 500", status_code=500)
        with self.lock:
            self.requests.append(request)
        return self.reply


def _complete(path, data: bytes) -> threading.Event:
    path.write_bytes(data)
    done = threading.Event()
    done.set()
    return done


def test_upload_sends_parts_with_total_only_on_the_last(tmp_path):
    sink = _Sink()
    done = _complete(tmp_path / "out.mp4", b"0123456789")
    uploader = StreamUploader(InvokerPool([sink]), part_size=4)

    summary = uploader.upload(tmp_path / "out.mp4", done, file_id=7)

    assert [(r.part_index, r.total_parts, r.data) for r in sink.requests] == [
        (0, -1, b"0123"),
        (1, -1, b"4567"),
        (2, 3, b"89"),
    ]
    assert {r.file_id for r in sink.requests} == {7}
    assert summary.file_id == 7
    assert summary.parts == 3
    assert summary.bytes == 10


def test_upload_of_exact_multiple_has_no_empty_part(tmp_path):
    sink = _Sink()
    done = _complete(tmp_path / "out.mp4", b"abcdefgh")

    summary = StreamUploader(InvokerPool([sink]), part_size=4).upload(tmp_path / "out.mp4", done)

    assert [(r.part_index, r.total_parts, len(r.data)) for r in sink.requests] == [
        (0, -1, 4),
        (1, 2, 4),
    ]
    assert summary.parts == 2
    assert isinstance(summary.file_id, int)


def test_empty_file_uploads_nothing(tmp_path):
    sink = _Sink()
    done = _complete(tmp_path / "empty.mp4", b"")

    summary = StreamUploader(InvokerPool([sink]), part_size=4).upload(tmp_path / "empty.mp4", done)

    assert sink.requests == []
    assert summary.parts == 0
    assert summary.bytes == 0


def test_upload_follows_a_growing_file(tmp_path):
    path = tmp_path / "growing.mp4"
    path.touch()
    payload = bytes(range(256)) * 8
    done = threading.Event()

    def _write() -> None:
        for start in range(0, len(payload), 100):
            with open(path, "ab") as handle:
                handle.write(payload[start : start + 100])
            time.sleep(0.002)
        done.set()

    writer = threading.Thread(target=_write)
    writer.start()
    sink = _Sink()
    summary = StreamUploader(InvokerPool([sink]), part_size=256, poll_interval=0.001).upload(path, done)
    writer.join()

    assert b"".join(r.data for r in sink.requests) == payload
    assert summary.parts == 8
    assert sink.requests[-1].total_parts == 8


def test_concurrent_upload_spreads_parts_across_the_pool(tmp_path):
    sinks = [_Sink(delay=0.005) for _ in range(3)]
    payload = bytes(i % 256 for i in range(1000))
    done = _complete(tmp_path / "out.mp4", payload)

    summary = StreamUploader(InvokerPool(sinks), part_size=100, concurrency=3).upload(
        tmp_path / "out.mp4", done
    )

    received = sorted((r for s in sinks for r in s.requests), key=lambda r: r.part_index)
    assert [r.part_index for r in received] == list(range(10))
    assert b"".join(r.data for r in received) == payload
    assert all(len(s.requests) > 0 for s in sinks)
    assert summary.parts == 10
    assert summary.bytes == 1000


def test_part_failure_propagates_and_stops_the_upload(tmp_path):
    sink = _Sink(fail_on=1)
    done = _complete(tmp_path / "out.mp4", b"x" * 40)

    with pytest.raises(BadStatusError):
        StreamUploader(InvokerPool([sink]), part_size=4).upload(tmp_path / "out.mp4", done)

    assert [r.part_index for r in sink.requests] == [0]


def test_rejected_part_raises(tmp_path):
    sink = _Sink(reply=False)
    done = _complete(tmp_path / "out.mp4", b"abc")

    with pytest.raises(RangeRelayError, match="rejected"):
        StreamUploader(InvokerPool([sink]), part_size=4).upload(tmp_path / "out.mp4", done)


def test_empty_pool_is_rejected_before_reading(tmp_path):
    done = threading.Event()
    with pytest.raises(NoClientsError):
        StreamUploader(InvokerPool(), part_size=4).upload(tmp_path / "missing.mp4", done)


def test_upload_to_http_sink(tmp_path, origin_server):
    done = _complete(tmp_path / "out.mp4", b"hello world!")

    with HttpInvoker(origin_server.url_for("/upload")) as invoker:
        summary = StreamUploader(InvokerPool([invoker]), part_size=5).upload(
            tmp_path / "out.mp4", done, file_id="file-1"
        )

    uploads = origin_server.state.uploads
    assert [body for _, body in uploads] == [b"hello", b" worl", b"d!"]
    assert [headers["x-total-parts"] for headers, _ in uploads] == ["-1", "-1", "3"]
    assert {headers["x-file-id"] for headers, _ in uploads} == {"file-1"}
    assert summary.parts == 3


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        StreamUploader(InvokerPool(), concurrency=0)


def test_undecodable_sink_reply_is_a_relay_error(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"\xff\xfe\xfa")

    done = _complete(tmp_path / "out.mp4", b"abcdef")
    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        pool = InvokerPool([HttpInvoker("https://sink.example.org", client=client)])
        with pytest.raises(RangeRelayError):
            StreamUploader(pool, part_size=4).upload(tmp_path / "out.mp4", done)


def test_cancellation_between_parts_stops_before_the_next_send(tmp_path):
    token = CancellationToken()

    class _CancellingSink(_Sink):
        def invoke(self, request: UploadPartRequest, **kwargs: Any) -> Any:
            reply = super().invoke(request, **kwargs)
            token.cancel()
            return reply

    sink = _CancellingSink()
    done = _complete(tmp_path / "out.mp4", b"q" * 12)

    with pytest.raises(CancellationError):
        StreamUploader(InvokerPool([sink]), part_size=4).upload(
            tmp_path / "out.mp4", done, token=token
        )

    assert [r.part_index for r in sink.requests] == [0]
    assert token.child_count == 0


@pytest.mark.parametrize("fail_on", [-1, 1])
def test_upload_releases_its_scope_on_the_caller_token(tmp_path, fail_on):
    token = CancellationToken()
    done = _complete(tmp_path / "out.mp4", b"r" * 12)
    uploader = StreamUploader(InvokerPool([_Sink(fail_on=fail_on)]), part_size=4)

    for _ in range(3):
        try:
            uploader.upload(tmp_path / "out.mp4", done, token=token)
        except BadStatusError:
            pass

    assert token.child_count == 0
    assert not token.is_cancelled()
