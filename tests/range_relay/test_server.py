"""Tests for the partial-content server and its range parser."""

from __future__ import annotations

import threading
import time

import httpx
import pytest

from RangeRelay.formats import MediaSource
from RangeRelay.partitioned_file import PartitionedFile
from RangeRelay.server import PartialContentServer, RangeNotSatisfiable, parse_range

PAYLOAD = b"0123456789abcdefghij"


@pytest.fixture
def complete_file(tmp_path) -> PartitionedFile:
    path = tmp_path / "movie.mp4"
    path.write_bytes(PAYLOAD)
    return PartitionedFile.from_existing(path, chunk_size_hint=8)


@pytest.fixture
def relay_server():
    server = PartialContentServer(poll_interval=0.001)
    server.start()
    yield server
    server.close()


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, None),
        ("", None),
        ("bytes=0-4", (0, 5)),
        ("bytes=5-", (5, 20)),
        ("bytes=-3", (17, 20)),
        ("bytes=-100", (0, 20)),
        ("bytes=10-1000", (10, 20)),
        ("bytes=0-0", (0, 1)),
        ("items=0-4", None),
        ("bytes=4-2", None),
        ("bytes=abc", None),
        ("bytes=0-1,4-5", None),
    ],
)
def test_parse_range(header, expected):
    assert parse_range(header, 20) == expected


@pytest.mark.parametrize("header", ["bytes=20-", "bytes=20-20", "bytes=25-30", "bytes=-0"])
def test_parse_range_unsatisfiable(header):
    with pytest.raises(RangeNotSatisfiable):
        parse_range(header, 20)


def test_full_get_returns_200_with_accept_ranges(relay_server, complete_file):
    relay_server.add_file("/video", complete_file)
    response = httpx.get(relay_server.url_for("/video"))

    assert response.status_code == 200
    assert response.content == PAYLOAD
    assert response.headers["Accept-Ranges"] == "bytes"
    assert response.headers["Content-Type"] == "video/mp4"
    assert response.headers["Content-Length"] == str(len(PAYLOAD))


@pytest.mark.parametrize(
    "header, body, content_range",
    [
        ("bytes=2-5", PAYLOAD[2:6], "bytes 2-5/20"),
        ("bytes=15-", PAYLOAD[15:], "bytes 15-19/20"),
        ("bytes=-4", PAYLOAD[16:], "bytes 16-19/20"),
    ],
)
def test_range_get_returns_206(relay_server, complete_file, header, body, content_range):
    relay_server.add_file("/video", complete_file)
    response = httpx.get(relay_server.url_for("/video"), headers={"Range": header})

    assert response.status_code == 206
    assert response.content == body
    assert response.headers["Content-Range"] == content_range


def test_range_past_end_returns_416(relay_server, complete_file):
    relay_server.add_file("video", complete_file)
    response = httpx.get(relay_server.url_for("/video"), headers={"Range": "bytes=20-"})

    assert response.status_code == 416
    assert response.headers["Content-Range"] == "bytes */20"


def test_head_returns_headers_only(relay_server, complete_file):
    relay_server.add_file("/video", complete_file)
    response = httpx.head(relay_server.url_for("/video"), headers={"Range": "bytes=0-9"})

    assert response.status_code == 206
    assert response.headers["Content-Length"] == "10"
    assert response.content == b""


def test_unknown_route_returns_404(relay_server):
    assert httpx.get(relay_server.url_for("/missing")).status_code == 404


def test_unpartitioned_file_is_unavailable(relay_server, tmp_path):
    relay_server.add_file("/video", PartitionedFile(tmp_path / "pending.mp4"))
    response = httpx.get(relay_server.url_for("/video"))
    assert response.status_code == 503


def test_ungated_route_serves_unwritten_bytes_as_zeros(relay_server, tmp_path):
    pfile = PartitionedFile(tmp_path / "partial.bin", size=10)
    pfile.allocate()
    pfile.split(5)
    relay_server.add_file("/partial", pfile, gate=False)

    response = httpx.get(relay_server.url_for("/partial"))

    assert response.status_code == 200
    assert response.content == b"\x00" * 10
    assert response.headers["Content-Type"] == "application/octet-stream"


def test_gated_route_waits_for_part_availability(relay_server, tmp_path):
    payload = b"A" * 10 + b"B" * 10
    pfile = PartitionedFile(tmp_path / "growing.bin", size=len(payload))
    pfile.allocate()
    parts = pfile.split(10)
    relay_server.add_file("/growing", pfile, gate=True)
    results = {}

    def _fetch() -> None:
        results["response"] = httpx.get(relay_server.url_for("/growing"), timeout=10)

    reader = threading.Thread(target=_fetch)
    reader.start()
    time.sleep(0.1)
    assert reader.is_alive()

    for part in parts:
        with open(pfile.path, "r+b") as handle:
            handle.seek(part.offset)
            handle.write(payload[part.offset : part.end])
        part.mark_available()

    reader.join(timeout=10)
    assert not reader.is_alive()
    assert results["response"].status_code == 200
    assert results["response"].content == payload


def test_gated_range_only_needs_covering_parts(relay_server, tmp_path):
    pfile = PartitionedFile(tmp_path / "growing.bin", size=30)
    pfile.allocate()
    parts = pfile.split(10)
    with open(pfile.path, "r+b") as handle:
        handle.seek(10)
        handle.write(b"m" * 10)
    parts[1].mark_available()
    relay_server.add_file("/growing", pfile, gate=True)

    response = httpx.get(
        relay_server.url_for("/growing"), headers={"Range": "bytes=12-17"}, timeout=5
    )

    assert response.status_code == 206
    assert response.content == b"m" * 6


def test_close_aborts_gated_readers(tmp_path):
    pfile = PartitionedFile(tmp_path / "stalled.bin", size=10)
    pfile.allocate()
    pfile.split(10)
    server = PartialContentServer(poll_interval=0.001)
    server.start()
    server.add_file("/stalled", pfile, gate=True)
    outcome = {}

    def _fetch() -> None:
        try:
            outcome["response"] = httpx.get(server.url_for("/stalled"), timeout=10)
        except httpx.HTTPError as exc:
            outcome["error"] = exc

    reader = threading.Thread(target=_fetch)
    reader.start()
    time.sleep(0.1)
    server.close()
    reader.join(timeout=10)

    assert not reader.is_alive()
    assert "error" in outcome


def test_default_gate_follows_configuration(tmp_path):
    from RangeRelay.settings import ServerConfiguration

    pfile = PartitionedFile(tmp_path / "x.bin", size=4)
    server = PartialContentServer(ServerConfiguration(gate_on_availability=True))
    server.add_file("/x", pfile)
    assert server._lookup("/x").gate is True
    server.add_file("/y", pfile, gate=False)
    assert server._lookup("/y").gate is False


def test_remote_route_proxies_range_and_source_headers(relay_server, origin_server):
    payload = bytes(range(200))
    origin_server.state.payloads["/audio.m4a"] = payload
    source = MediaSource.model_validate(
        {"url": origin_server.url_for("/audio.m4a"), "http_headers": {"X-Token": "abc"}}
    )

    with httpx.Client() as client:
        relay_server.add_remote("/audio", source, client)
        response = httpx.get(relay_server.url_for("/audio"), headers={"Range": "bytes=10-19"})

    assert response.status_code == 206
    assert response.content == payload[10:20]
    assert response.headers["Content-Range"] == "bytes 10-19/200"
    forwarded = origin_server.gets_for("/audio.m4a")[-1]
    assert forwarded["x-token"] == "abc"
    assert forwarded["range"] == "bytes=10-19"


def test_base_url_requires_running_server():
    server = PartialContentServer()
    with pytest.raises(RuntimeError):
        _ = server.base_url
    server.close()


def test_context_manager_starts_and_stops(complete_file):
    with PartialContentServer() as server:
        server.add_file("/video", complete_file)
        assert httpx.get(server.url_for("/video")).content == PAYLOAD
        url = server.url_for("/video")
    with pytest.raises(httpx.HTTPError):
        httpx.get(url, timeout=1)


@pytest.mark.parametrize("header", ["bytes=20-", "bytes=-0", "bytes=30-40"])
def test_unsatisfiable_ranges_are_never_served_in_full(relay_server, complete_file, header):
    relay_server.add_file("/video", complete_file)
    response = httpx.get(relay_server.url_for("/video"), headers={"Range": header})

    assert response.status_code == 416
    assert response.headers["Content-Range"] == "bytes */20"
    assert response.content == b""


def test_suffix_range_of_empty_file_is_unsatisfiable():
    with pytest.raises(RangeNotSatisfiable):
        parse_range("bytes=-5", 0)


def test_close_releases_server_scope_from_parent_token():
    from RangeRelay.cancellation import CancellationToken

    token = CancellationToken()
    server = PartialContentServer(token=token)
    server.start()
    assert token.child_count == 1
    server.close()

    assert token.child_count == 0
    assert not token.is_cancelled()
