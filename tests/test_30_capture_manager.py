from __future__ import annotations

import threading
import time

from capture_fakes import BLACK, FAST_HEALTH, FakeBackend
from screenrec.capture_backend import CaptureDeviceError
from screenrec.capture_manager import CaptureManager, RetryBackoff, profile_from_cfg
from screenrec.capture_session import SessionState, StartError
from screenrec.recorder_daemon import RecorderDaemon
from screenrec.transfer_client import TransferClient


def _manager(store, backend, **kwargs):
    return CaptureManager(
        backend,
        TransferClient(store),
        health=FAST_HEALTH,
        capture_settings={"slot_wait_ms": 2000},
        **kwargs,
    )


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_retry_backoff_doubles_and_caps():
    backoff = RetryBackoff(5000, 60000)
    assert [backoff.next_delay_ms() for _ in range(6)] == [5000, 10000, 20000, 40000, 60000, 60000]
    backoff.reset()
    assert backoff.next_delay_ms() == 5000


def test_profile_from_cfg_defaults():
    assert profile_from_cfg(None).label == "1920x1080@30"
    assert profile_from_cfg({"width": 800, "height": 600, "fps": "10"}).label == "800x600@10"


def test_start_all_labels_and_flushes_every_screen(make_store):
    backend = FakeBackend(names=("Display 2", "Built-in"))
    manager = _manager(make_store(), backend)

    results = manager.start_all()

    assert set(results) == {"screen2", "screen1"}
    assert manager.live_count() == 2
    for handle in backend.opened:
        handle.emit(b"chunk")
    report = manager.stop_and_flush(2000)
    assert report.ok
    assert sorted(report.completed) == ["screen1", "screen2"]
    assert manager.live_count() == 0


def test_start_all_reports_per_screen_start_errors(make_store):
    backend = FakeBackend(names=("Screen 1",))
    for label in ("1920x1080@30", "1280x720@24", "640x480@15"):
        backend.frames[label] = BLACK
    manager = _manager(make_store(), backend)

    results = manager.start_all()

    assert isinstance(results["screen1"], StartError)
    assert manager.live_count() == 0


def test_is_last_session_only_for_final_session(make_store):
    backend = FakeBackend(names=("Screen 1", "Screen 2"))
    manager = _manager(make_store(), backend)
    results = manager.start_all()
    for handle in backend.opened:
        handle.emit(b"chunk")

    first, second = results["screen1"], results["screen2"]
    assert first.stop_and_flush(2000)
    assert second.stop_and_flush(2000)

    assert first.result.meta["isLastSession"] is False
    assert second.result.meta["isLastSession"] is True


def test_restart_waits_for_previous_session_to_finalize(make_store):
    backend = FakeBackend()
    manager = _manager(make_store(), backend)
    source = backend.sources[0]
    first = manager.start_source(source, "screen1")
    gate = threading.Event()
    backend.opened[0].stop_gate = gate
    threading.Timer(0.2, gate.set).start()

    second = manager.start_source(source, "screen1")

    assert first.finalized.is_set()
    assert first.state is SessionState.STOPPED
    assert second.state is SessionState.RECORDING
    assert manager.sessions() == [second]
    second.stop_and_flush(2000)


def test_stop_and_flush_reports_unfinished_sessions(make_store):
    backend = FakeBackend()
    manager = _manager(make_store(), backend)
    manager.start_all()
    gate = threading.Event()
    backend.opened[0].stop_gate = gate

    report = manager.stop_and_flush(50)

    assert not report.ok
    assert report.unfinished == ["screen1"]
    gate.set()
    assert _wait_for(lambda: manager.live_count() == 0)


def test_failures_and_chunk_notifications_are_forwarded(make_store):
    backend = FakeBackend()
    failures, saved = [], []
    manager = _manager(
        make_store(),
        backend,
        on_failure=failures.append,
        on_chunk_saved=lambda label, n: saved.append((label, n)),
    )
    manager.start_all()
    backend.opened[0].emit(b"chunk")
    backend.opened[0]._mark_ended()

    assert _wait_for(lambda: manager.live_count() == 0)
    assert saved == [("screen1", 1)]
    assert [f.reason for f in failures] == ["input-track-ended"]


def test_daemon_resumes_after_failure_and_flushes_on_stop(make_store):
    backend = FakeBackend()
    daemon = RecorderDaemon(make_store(), backend)
    outcome = {}
    thread = threading.Thread(target=lambda: outcome.setdefault("report", daemon.run()))
    thread.start()
    try:
        assert _wait_for(lambda: len(backend.opened) == 1 and backend.opened[0].chunks_started)
        backend.opened[0]._mark_ended()
        assert _wait_for(lambda: len(backend.opened) == 2 and backend.opened[1].chunks_started)
    finally:
        daemon.request_stop()
        thread.join(5.0)

    assert not thread.is_alive()
    assert outcome["report"].ok
    assert [f.reason for f in daemon.failures] == ["input-track-ended"]
    assert all(handle.closed for handle in backend.opened)


def test_start_all_turns_raw_backend_errors_into_start_errors(make_store):
    backend = FakeBackend()
    for label in ("1920x1080@30", "1280x720@24", "640x480@15"):
        backend.open_exceptions[label] = ValueError("Cannot connect to display")
    manager = _manager(make_store(), backend)

    results = manager.start_all()

    assert isinstance(results["screen1"], StartError)
    assert results["screen1"].errors["640x480@15"] == "Cannot connect to display"
    assert manager.live_count() == 0


def test_daemon_backs_off_while_screens_cannot_be_listed(make_store):
    backend = FakeBackend()
    backend.list_error = CaptureDeviceError("unable to enumerate screens: no display")
    daemon = RecorderDaemon(make_store(), backend)
    daemon.backoff = RetryBackoff(10, 20)
    assert daemon.start_capture() is False

    outcome = {}
    thread = threading.Thread(target=lambda: outcome.setdefault("report", daemon.run()))
    thread.start()
    try:
        time.sleep(0.1)
        assert thread.is_alive()
        backend.list_error = None
        assert _wait_for(lambda: len(backend.opened) == 1 and backend.opened[0].chunks_started)
    finally:
        daemon.request_stop()
        thread.join(5.0)

    assert not thread.is_alive()
    assert outcome["report"].ok
