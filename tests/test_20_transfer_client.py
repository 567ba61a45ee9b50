from __future__ import annotations

import hashlib
import io
import json
import os
import time
from urllib.error import HTTPError, URLError

import pytest

from screenrec.chunk_sink import DiskSink, MemorySink, select_sink
from screenrec.transfer_client import TEMP_SUFFIX, TransferClient, TransferError, recording_file_name

RECEIVER = "http://receiver.test:5055/"


class _Response:
    def __init__(self, payload: dict, status: int = 200):
        self._raw = json.dumps(payload).encode("utf-8")
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return self._raw


class _Opener:
    def __init__(self, response=None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.requests = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


def _recording(client: TransferClient, name: str, data: bytes = b"abc"):
    client.recordings_dir.mkdir(parents=True, exist_ok=True)
    path = client.recordings_dir / name
    path.write_bytes(data)
    return path


def test_recording_file_name_format():
    assert recording_file_name("screen2", 1700000000000) == "recording-screen2-1700000000000.webm"


def test_successful_delivery_sends_integrity_headers(make_store):
    store = make_store(receiver_url=RECEIVER, token="tok", agent_name="Jane Doe")
    opener = _Opener(_Response({"success": True, "size": 3}))
    client = TransferClient(store, opener=opener)
    path = _recording(client, "recording-screen1-1000.webm")

    result = client.deliver(path, {"durationMs": 5})

    assert result.success and result.uploaded
    request = opener.requests[0]
    assert request.get_method() == "POST"
    assert request.get_header("X-file-hash") == hashlib.md5(b"abc").hexdigest()
    assert request.get_header("X-file-size") == "3"
    assert request.get_header("X-agent-name") == "Jane Doe"
    assert request.get_header("X-file-name") == "recording-screen1-1000.webm"
    assert request.get_header("Authorization") == "Bearer tok"
    assert "recording-screen1-1000.webm" in store.ledger
    assert not path.exists()


def test_ledgered_file_is_not_redelivered(make_store):
    store = make_store(receiver_url=RECEIVER)
    store.ledger.add("recording-screen1-1000.webm")
    opener = _Opener(error=AssertionError("network must not be used"))
    client = TransferClient(store, opener=opener)
    path = _recording(client, "recording-screen1-1000.webm")

    result = client.deliver(path)

    assert result.success
    assert result.skipped == "already-uploaded"
    assert opener.requests == []


def test_transport_failure_keeps_file_and_ledger(make_store):
    store = make_store(receiver_url=RECEIVER)
    client = TransferClient(store, opener=_Opener(error=URLError("connection refused")))
    path = _recording(client, "recording-screen1-2000.webm")

    result = client.deliver(path)

    assert not result.success
    assert result.error == "connection refused"
    assert path.exists()
    assert len(store.ledger) == 0


def test_rejected_upload_reports_receiver_error(make_store):
    store = make_store(receiver_url=RECEIVER)
    body = io.BytesIO(json.dumps({"success": False, "error": "hash-mismatch"}).encode())
    error = HTTPError(RECEIVER, 400, "Bad Request", {}, body)
    client = TransferClient(store, opener=_Opener(error=error))
    path = _recording(client, "recording-screen1-3000.webm")

    result = client.deliver(path)

    assert not result.success
    assert result.error == "hash-mismatch"
    assert path.exists()


def test_no_receiver_keeps_file_locally(make_store):
    client = TransferClient(make_store())
    path = _recording(client, "recording-screen1-4000.webm")
    result = client.deliver(path)
    assert result.success and not result.uploaded
    assert result.path == path and path.exists()


def test_chunks_arriving_while_file_opens_are_flushed_in_order(make_store):
    client = TransferClient(make_store())
    real_open = client._open_destination

    def _slow_open(path):
        client.append_chunk("src:0", b"early-")
        return real_open(path)

    client._open_destination = _slow_open
    temp_path = client.create_temp_file("src:0", "screen1")
    client.append_chunk("src:0", b"late")

    assert temp_path.suffix == TEMP_SUFFIX
    result = client.finalize("src:0", {"isLastSession": True})
    assert result.path.read_bytes() == b"early-late"
    assert result.meta["isLastSession"] is True
    assert "durationMs" in result.meta


def test_append_to_unknown_source_raises(make_store):
    client = TransferClient(make_store())
    with pytest.raises(TransferError):
        client.append_chunk("missing", b"x")
    with pytest.raises(TransferError):
        client.finalize("missing")


def test_finalize_without_chunks_drops_file(make_store):
    client = TransferClient(make_store())
    temp_path = client.create_temp_file("src:0", "screen1")
    result = client.finalize("src:0")
    assert result.success and result.skipped == "empty-recording"
    assert not temp_path.exists()
    assert list(client.recordings_dir.iterdir()) == []


def test_purge_removes_only_old_recordings(make_store):
    client = TransferClient(make_store())
    now = time.time()
    old_webm = _recording(client, "recording-screen1-1.webm")
    old_part = _recording(client, "recording-screen1-2.part")
    old_other = _recording(client, "notes.txt")
    fresh = _recording(client, "recording-screen1-3.webm")
    for path in (old_webm, old_part, old_other):
        os.utime(path, (now - 25 * 3600, now - 25 * 3600))
    os.utime(fresh, (now - 23 * 3600, now - 23 * 3600))

    removed = client.purge_stale_files(now)

    assert sorted(p.name for p in removed) == ["recording-screen1-1.webm", "recording-screen1-2.part"]
    assert old_other.exists() and fresh.exists()


def test_housekeeping_runs_before_first_temp_file(make_store):
    client = TransferClient(make_store())
    stale = _recording(client, "recording-screen1-1.webm")
    os.utime(stale, (time.time() - 48 * 3600,) * 2)

    client.create_temp_file("src:0", "screen1")

    assert not stale.exists()


def test_select_sink_falls_back_to_memory(make_store):
    client = TransferClient(make_store())
    assert isinstance(select_sink(client, "src:0", "screen1"), DiskSink)
    # a second temp file for the same source is refused
    assert isinstance(select_sink(client, "src:0", "screen1"), MemorySink)


def test_memory_sink_saves_joined_buffer(make_store):
    client = TransferClient(make_store())
    sink = MemorySink(client, "screen2", clock=lambda: 1700000000.0)
    sink.write(b"one")
    sink.write(b"two")
    result = sink.finalize({"isLastSession": False})
    assert result.file_name == "recording-screen2-1700000000000.webm"
    assert result.path.read_bytes() == b"onetwo"
    assert sink.chunks_written == 2


def test_disk_sink_latches_after_a_failed_append(make_store, monkeypatch):
    opener = _Opener(_Response({"success": True}))
    client = TransferClient(make_store(receiver_url=RECEIVER), opener=opener)
    sink = select_sink(client, "src:0", "screen1")
    assert isinstance(sink, DiskSink)
    sink.write(b"first")
    real_append = client.append_chunk

    def flaky_append(source_id, data):
        if data == b"LOST-CHUNK":
            raise OSError("disk full")
        real_append(source_id, data)

    monkeypatch.setattr(client, "append_chunk", flaky_append)
    with pytest.raises(TransferError):
        sink.write(b"LOST-CHUNK")
    with pytest.raises(TransferError):
        sink.write(b"third")

    result = sink.finalize({})
    assert result.success is False
    assert result.error == "chunk-write-failed"
    assert result.meta["writeErrors"] == 2
    assert sink.chunks_written == 1
    assert opener.requests == []
    assert result.path.read_bytes() == b"first"
    assert result.file_name not in client.store.ledger
