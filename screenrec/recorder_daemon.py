#!/usr/bin/env python3
"""
Recorder daemon: capture every screen until told to stop.

- Purges stale local recordings, then starts one session per screen.
- A fatal capture failure stops the remaining sessions, flushes them and
  resumes right away. A resume that cannot start any screen is retried with
  exponential backoff (5 s doubling up to 60 s); a successful start resets it.
- SIGINT/SIGTERM flush all sessions (bounded by capture.flush_timeout_ms).
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Optional

from screenrec.capture_backend import CaptureBackend, CaptureDeviceError, MssScreenBackend
from screenrec.capture_manager import CaptureManager, FlushReport, RetryBackoff
from screenrec.capture_session import CaptureSession
from screenrec.config import reload_cfg, section
from screenrec.health_monitor import FailureReport, HealthSettings
from screenrec.ledger import RuntimeStore
from screenrec.transfer_client import TransferClient

LOG = logging.getLogger("recorder")


class RecorderDaemon:
    def __init__(
        self,
        store: RuntimeStore,
        backend: CaptureBackend,
        *,
        transfer: Optional[TransferClient] = None,
    ) -> None:
        self.store = store
        self.transfer = transfer or TransferClient(store)
        capture = store.settings("capture")
        retry = store.settings("retry")
        self.flush_timeout_ms = float(capture["flush_timeout_ms"])
        self.backoff = RetryBackoff(int(retry["base_delay_ms"]), int(retry["max_delay_ms"]))
        self.manager = CaptureManager(
            backend,
            self.transfer,
            health=HealthSettings.from_cfg(store.settings("health")),
            capture_settings=capture,
            on_failure=self._on_failure,
            on_chunk_saved=self._on_chunk_saved,
        )
        self._stop = threading.Event()
        self._failed = threading.Event()
        self.failures: list[FailureReport] = []

    def _on_failure(self, report: FailureReport) -> None:
        self.failures.append(report)
        self._failed.set()

    def _on_chunk_saved(self, label: str, chunks: int) -> None:
        LOG.debug("%s: %d chunk(s) saved", label, chunks)

    def request_stop(self) -> None:
        self._stop.set()
        self._failed.set()

    def start_capture(self) -> bool:
        try:
            results = self.manager.start_all()
        except CaptureDeviceError as exc:
            LOG.error("Unable to list screens: %s", exc)
            return False
        started = [label for label, value in results.items() if isinstance(value, CaptureSession)]
        if started:
            LOG.info("Recording %s", ", ".join(started))
        return bool(started)

    def run(self) -> FlushReport:
        self.transfer.purge_stale_files()
        while not self._stop.is_set():
            self._failed.clear()
            if not self.start_capture():
                delay = self.backoff.next_delay_ms()
                LOG.warning("No screen could be started; retrying in %ds", delay // 1000)
                self._stop.wait(delay / 1000.0)
                continue
            self.backoff.reset()
            self._failed.wait()
            if self._stop.is_set():
                break
            reason = self.failures[-1].reason if self.failures else "unknown"
            LOG.warning("Capture failed (%s); flushing and resuming", reason)
            self.manager.stop_and_flush(self.flush_timeout_ms)
        return self.manager.stop_and_flush(self.flush_timeout_ms)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Record all screens and deliver them to the receiver.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    level = "DEBUG" if section(cfg, "logging").get("dev_mode") else args.log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    store = RuntimeStore.from_cfg(cfg)
    capture = section(cfg, "capture")
    backend = MssScreenBackend(
        ffmpeg_path=str(section(cfg, "receiver").get("ffmpeg_path") or ""),
        encoder=capture.get("encoder"),
    )
    daemon = RecorderDaemon(store, backend)

    def _handle_signal(signum, frame):  # noqa
        LOG.info("received signal %s, flushing recordings...", signum)
        daemon.request_stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    report = daemon.run()
    if not report.ok:
        LOG.error("Exited before %s finished flushing", ", ".join(report.unfinished))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
