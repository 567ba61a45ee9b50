"""Runs one capture session per screen and keeps their slots consistent."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union

from screenrec.capture_backend import CaptureBackend, CaptureSource, ResolutionProfile
from screenrec.capture_session import CaptureSession, StartError, assign_labels
from screenrec.health_monitor import FailureReport, HealthSettings
from screenrec.transfer_client import TransferClient


class RetryBackoff:
    """Exponential delay for auto-resume: base, doubling, capped."""

    def __init__(self, base_ms: int = 5000, max_ms: int = 60000):
        self.base_ms = max(1, int(base_ms))
        self.max_ms = max(self.base_ms, int(max_ms))
        self.attempts = 0

    def next_delay_ms(self) -> int:
        delay = min(self.max_ms, self.base_ms * (2 ** self.attempts))
        if delay < self.max_ms:
            self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


@dataclass
class FlushReport:
    completed: list[str] = field(default_factory=list)
    unfinished: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.unfinished


def profile_from_cfg(raw: Mapping[str, Any] | None) -> ResolutionProfile:
    raw = raw or {}
    return ResolutionProfile(
        width=int(raw.get("width", 1920)),
        height=int(raw.get("height", 1080)),
        fps=int(raw.get("fps", 30)),
    )


class CaptureManager:
    def __init__(
        self,
        backend: CaptureBackend,
        transfer: TransferClient,
        *,
        health: HealthSettings | None = None,
        capture_settings: Mapping[str, Any] | None = None,
        on_failure: Callable[[FailureReport], None] | None = None,
        on_chunk_saved: Callable[[str, int], None] | None = None,
        session_factory: Callable[..., CaptureSession] = CaptureSession,
    ) -> None:
        settings = dict(capture_settings or {})
        self.backend = backend
        self.transfer = transfer
        self.health = health or HealthSettings()
        self.timeslice_ms = int(settings.get("timeslice_ms", 1000))
        self.slot_wait_ms = float(settings.get("slot_wait_ms", 15000))
        self.requested_profile = profile_from_cfg(settings.get("requested_profile"))
        self._on_failure = on_failure
        self._on_chunk_saved = on_chunk_saved
        self._session_factory = session_factory

        self._log = logging.getLogger("capture")
        self._lock = threading.Lock()
        self._slots: dict[str, CaptureSession] = {}

    def sessions(self) -> list[CaptureSession]:
        with self._lock:
            return list(self._slots.values())

    def live_count(self) -> int:
        with self._lock:
            return len(self._slots)

    # --- session hooks ---
    def _release_slot(self, session: CaptureSession) -> None:
        with self._lock:
            if self._slots.get(session.source_id) is session:
                del self._slots[session.source_id]

    def _is_last_session(self, session: CaptureSession) -> bool:
        with self._lock:
            others = [s for s in self._slots.values() if s is not session]
        return not others

    def _forward_failure(self, session: CaptureSession, report: FailureReport) -> None:
        if self._on_failure is not None:
            self._on_failure(report)

    def _forward_chunk(self, session: CaptureSession, chunks: int) -> None:
        if self._on_chunk_saved is not None:
            self._on_chunk_saved(session.label, chunks)

    # --- start ---
    def start_source(
        self,
        source: CaptureSource,
        label: str,
        requested: ResolutionProfile | None = None,
    ) -> CaptureSession:
        with self._lock:
            previous = self._slots.get(source.id)
        if previous is not None:
            self._log.info("%s: waiting for previous session to finalize", label)
            if not previous.stop_and_flush(self.slot_wait_ms):
                raise StartError(label, {"slot": "previous session still finalizing"})
            self._release_slot(previous)

        session = self._session_factory(
            source,
            self.backend,
            self.transfer,
            label=label,
            health=self.health,
            timeslice_ms=self.timeslice_ms,
            on_failure=self._forward_failure,
            on_chunk_saved=self._forward_chunk,
            on_finalized=self._release_slot,
            is_last_session=self._is_last_session,
        )
        with self._lock:
            if source.id in self._slots:
                raise StartError(label, {"slot": f"{source.id} claimed concurrently"})
            self._slots[source.id] = session
        try:
            session.start(requested or self.requested_profile)
        except BaseException:
            self._release_slot(session)
            raise
        return session

    def start_all(
        self, requested: ResolutionProfile | None = None
    ) -> dict[str, Union[CaptureSession, StartError]]:
        """Start every source in parallel; values are sessions or their StartError."""
        sources = self.backend.list_sources()
        labels = assign_labels(sources)
        results: dict[str, Union[CaptureSession, StartError]] = {}
        if not sources:
            return results
        with ThreadPoolExecutor(max_workers=len(sources), thread_name_prefix="capture_start") as pool:
            futures = {
                labels[src.id]: pool.submit(self.start_source, src, labels[src.id], requested)
                for src in sources
            }
            for label, future in futures.items():
                try:
                    results[label] = future.result()
                except StartError as exc:
                    self._log.error("%s", exc)
                    results[label] = exc
                except Exception as exc:  # noqa: BLE001 - one broken screen must not stop the others
                    self._log.exception("%s: unexpected start failure", label)
                    results[label] = StartError(label, {"start": str(exc) or type(exc).__name__})
        return results

    # --- stop ---
    def stop_all(self) -> None:
        for session in self.sessions():
            session.stop()

    def stop_and_flush(self, timeout_ms: float) -> FlushReport:
        sessions = self.sessions()
        for session in sessions:
            session.stop()
        deadline = time.monotonic() + max(0.0, timeout_ms) / 1000.0
        report = FlushReport()
        for session in sessions:
            remaining = max(0.0, deadline - time.monotonic())
            if session.finalized.wait(remaining):
                report.completed.append(session.label)
            else:
                report.unfinished.append(session.label)
        if report.unfinished:
            self._log.warning("Sessions still finalizing after %sms: %s", timeout_ms, report.unfinished)
        return report

