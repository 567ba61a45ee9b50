"""One recording of one screen source, from probing to finalize.

State flow::

    idle -> probing -> recording -> stopping -> finalizing -> stopped
               \                        ^
                `-> failed              `-- health failure (ends as failed)

Chunks and health reports carry the ``instance_id`` of the attempt that
produced them; callbacks from an earlier attempt are ignored.
"""
from __future__ import annotations

import enum
import logging
import re
import threading
import time
import uuid
from typing import Any, Callable, Iterable, Optional

from screenrec.capture_backend import (
    CaptureBackend,
    CaptureDeviceError,
    CaptureHandle,
    CaptureSource,
    ResolutionProfile,
)
from screenrec.chunk_sink import CHUNK_WRITE_FAILED, ChunkSink, select_sink
from screenrec.health_monitor import (
    FailureReport,
    HealthMonitor,
    HealthSettings,
    ProbeCancelled,
    run_startup_probe,
)
from screenrec.transfer_client import DeliveryResult, TransferClient, TransferError

LABEL_RE = re.compile(r"(screen|display|monitor)\s*(\d+)", re.IGNORECASE)


class SessionState(enum.Enum):
    IDLE = "idle"
    PROBING = "probing"
    RECORDING = "recording"
    STOPPING = "stopping"
    FINALIZING = "finalizing"
    STOPPED = "stopped"
    FAILED = "failed"


class StartError(RuntimeError):
    """Every resolution profile failed; ``errors`` maps profile label to the last error."""

    def __init__(self, label: str, errors: dict[str, str]):
        self.label = label
        self.errors = dict(errors)
        detail = "; ".join(f"{profile}: {err}" for profile, err in self.errors.items()) or "no profiles tried"
        super().__init__(f"unable to start capture for {label}: {detail}")


def fallback_profiles(requested: ResolutionProfile) -> list[ResolutionProfile]:
    ladder = [
        requested,
        ResolutionProfile(1280, 720, min(requested.fps, 24)),
        ResolutionProfile(640, 480, 15),
    ]
    out: list[ResolutionProfile] = []
    for profile in ladder:
        if out and out[-1] == profile:
            continue
        out.append(profile)
    return out


def label_from_name(name: str) -> Optional[str]:
    match = LABEL_RE.search(name or "")
    if not match:
        return None
    return f"screen{int(match.group(2))}"


def assign_labels(sources: Iterable[CaptureSource]) -> dict[str, str]:
    """Map source ids to ``screen<N>`` labels.

    Names that mention a screen number keep it; the rest are numbered in
    enumeration order, skipping numbers already claimed.
    """
    sources = list(sources)
    labels: dict[str, str] = {}
    claimed: set[str] = set()
    for source in sources:
        label = label_from_name(source.name)
        if label and label not in claimed:
            labels[source.id] = label
            claimed.add(label)
    counter = 1
    for source in sources:
        if source.id in labels:
            continue
        while f"screen{counter}" in claimed:
            counter += 1
        labels[source.id] = f"screen{counter}"
        claimed.add(labels[source.id])
    return labels


class CaptureSession:
    def __init__(
        self,
        source: CaptureSource,
        backend: CaptureBackend,
        transfer: TransferClient,
        *,
        label: str,
        health: HealthSettings | None = None,
        timeslice_ms: int = 1000,
        on_failure: Callable[["CaptureSession", FailureReport], None] | None = None,
        on_chunk_saved: Callable[["CaptureSession", int], None] | None = None,
        on_finalized: Callable[["CaptureSession"], None] | None = None,
        is_last_session: Callable[["CaptureSession"], bool] | None = None,
    ) -> None:
        self.source = source
        self.backend = backend
        self.transfer = transfer
        self.label = label
        self.health = health or HealthSettings()
        self.timeslice_ms = int(timeslice_ms)
        self._on_failure = on_failure
        self._on_chunk_saved = on_chunk_saved
        self._on_finalized = on_finalized
        self._is_last_session = is_last_session

        self._log = logging.getLogger("capture")
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self.finalized = threading.Event()

        self.state = SessionState.IDLE
        self.instance_id = ""
        self.requested_profile: ResolutionProfile | None = None
        self.profile: ResolutionProfile | None = None
        self.started_at: float | None = None
        self.handle: CaptureHandle | None = None
        self.sink: ChunkSink | None = None
        self.monitor: HealthMonitor | None = None
        self.failure: FailureReport | None = None
        self.result: DeliveryResult | None = None
        self.finalize_error: str | None = None
        self._finalize_thread: threading.Thread | None = None

    @property
    def source_id(self) -> str:
        return self.source.id

    @property
    def temp_file_ready(self) -> bool:
        return bool(self.sink is not None and self.sink.streaming)

    # --- start ---
    def start(self, requested: ResolutionProfile) -> ResolutionProfile:
        with self._lock:
            if self.state is not SessionState.IDLE:
                raise RuntimeError(f"session {self.label} already started")
            self.state = SessionState.PROBING
            self.instance_id = uuid.uuid4().hex
            self.requested_profile = requested

        errors: dict[str, str] = {}
        try:
            for profile in fallback_profiles(requested):
                if self._cancel.is_set():
                    errors[profile.label] = "cancelled"
                    break
                try:
                    handle = self.backend.open(self.source, profile)
                except Exception as exc:  # noqa: BLE001 - any open error fails this profile
                    errors[profile.label] = str(exc) or type(exc).__name__
                    self._log.warning("%s: %s failed to open: %s", self.label, profile.label, exc)
                    continue

                try:
                    probe = run_startup_probe(handle, self.health, cancel=self._cancel)
                except ProbeCancelled:
                    handle.close()
                    errors[profile.label] = "cancelled"
                    break
                except Exception as exc:  # noqa: BLE001 - a broken probe fails this profile
                    handle.close()
                    errors[profile.label] = f"probe-error: {exc}"
                    self._log.warning("%s: %s probe errored: %s", self.label, profile.label, exc)
                    continue
                if not probe.ok:
                    handle.close()
                    errors[profile.label] = probe.reason or "probe-failed"
                    self._log.warning(
                        "%s: %s rejected (%d/%d black samples)",
                        self.label,
                        profile.label,
                        probe.black_samples,
                        probe.total_samples,
                    )
                    continue

                try:
                    self._begin_recording(handle, profile)
                except CaptureDeviceError as exc:
                    errors[profile.label] = str(exc)
                    continue
                self._log.info("%s recording at %s", self.label, profile.label)
                return profile
        except BaseException:
            self._fail_start()
            raise

        self._fail_start()
        raise StartError(self.label, errors)

    def _fail_start(self) -> None:
        with self._lock:
            self.state = SessionState.FAILED
        self.finalized.set()

    def _begin_recording(self, handle: CaptureHandle, profile: ResolutionProfile) -> None:
        instance = self.instance_id
        sink = select_sink(self.transfer, self.source.id, self.label)
        with self._lock:
            self.handle = handle
            self.profile = profile
            self.sink = sink
            self.started_at = time.time()
        try:
            handle.start_chunks(self.timeslice_ms, lambda chunk: self._handle_chunk(instance, chunk))
        except CaptureDeviceError:
            handle.close()
            with self._lock:
                self.handle = None
                self.sink = None
            self._discard_sink(sink)
            raise

        self.monitor = HealthMonitor(
            handle,
            self.health,
            lambda report: self._handle_failure(instance, report),
            context={
                "label": self.label,
                "source_id": self.source.id,
                "instance_id": instance,
                "requested_profile": self.requested_profile.as_dict() if self.requested_profile else None,
                "actual_profile": profile.as_dict(),
            },
        )
        with self._lock:
            if self.state is SessionState.PROBING:
                self.state = SessionState.RECORDING
        self.monitor.start()
        # stop() arrived after the probe finished
        if self._cancel.is_set():
            self.stop()

    def _discard_sink(self, sink: ChunkSink) -> None:
        try:
            sink.finalize({"discarded": True})
        except (TransferError, OSError) as exc:
            self._log.warning("%s: unable to discard sink: %s", self.label, exc)

    # --- callbacks ---
    def _handle_chunk(self, instance: str, chunk: bytes) -> None:
        with self._lock:
            live = instance == self.instance_id and self.state in (
                SessionState.PROBING,
                SessionState.RECORDING,
                SessionState.STOPPING,
            )
            sink = self.sink
        if not live or sink is None:
            self._log.debug("%s: dropping chunk from stale instance %s", self.label, instance)
            return
        try:
            sink.write(chunk)
        except TransferError as exc:
            self._handle_failure(instance, self._write_failure_report(instance, sink, exc))
            return
        if self._on_chunk_saved is not None:
            self._on_chunk_saved(self, sink.chunks_written)

    def _write_failure_report(self, instance: str, sink: ChunkSink, exc: Exception) -> FailureReport:
        self._log.debug("%s: %s", self.label, exc)
        return FailureReport(
            reason=CHUNK_WRITE_FAILED,
            label=self.label,
            source_id=self.source.id,
            instance_id=instance,
            requested_profile=self.requested_profile.as_dict() if self.requested_profile else None,
            actual_profile=self.profile.as_dict() if self.profile else None,
            counters={
                "chunks_written": sink.chunks_written,
                "write_errors": sink.write_errors,
            },
        )

    def _handle_failure(self, instance: str, report: FailureReport) -> None:
        with self._lock:
            if instance != self.instance_id or self.state is not SessionState.RECORDING:
                return
            self.failure = report
        self._log.error("%s stopping after failure: %s", self.label, report.reason)
        self.stop()
        if self._on_failure is not None:
            self._on_failure(self, report)

    # --- stop / finalize ---
    def stop(self) -> None:
        with self._lock:
            state = self.state
            if state is SessionState.IDLE:
                self.state = SessionState.STOPPED
                self.finalized.set()
                return
            if state is SessionState.PROBING:
                self._cancel.set()
                return
            if state is not SessionState.RECORDING:
                return
            self.state = SessionState.STOPPING
            self._finalize_thread = threading.Thread(
                target=self._finalize, name=f"finalize_{self.label}", daemon=True
            )
            thread = self._finalize_thread
        thread.start()

    def stop_and_flush(self, timeout_ms: float) -> bool:
        """Stop and wait for finalize; False when ``timeout_ms`` elapsed first."""
        self.stop()
        return self.finalized.wait(max(0.0, timeout_ms) / 1000.0)

    def _finalize(self) -> None:
        handle, sink, monitor = self.handle, self.sink, self.monitor
        try:
            if monitor is not None:
                monitor.stop()
            if handle is not None:
                handle.stop_chunks()
            with self._lock:
                self.state = SessionState.FINALIZING
            if sink is not None:
                self.result = sink.finalize(self._finalize_meta())
                if not self.result.success:
                    self._log.warning("%s delivery failed: %s", self.label, self.result.error)
        except (TransferError, OSError) as exc:
            self.finalize_error = str(exc)
            self._log.error("%s finalize failed: %s", self.label, exc)
        finally:
            if handle is not None:
                handle.close()
            with self._lock:
                self.state = SessionState.FAILED if self.failure else SessionState.STOPPED
            self.finalized.set()
            if self._on_finalized is not None:
                self._on_finalized(self)

    def _finalize_meta(self) -> dict[str, Any]:
        started = self.started_at or time.time()
        meta: dict[str, Any] = {
            "label": self.label,
            "sourceId": self.source.id,
            "instanceId": self.instance_id,
            "durationMs": int((time.time() - started) * 1000),
            "isLastSession": self._is_last_session(self) if self._is_last_session else True,
        }
        if self.profile is not None:
            meta["profile"] = self.profile.as_dict()
        if self.failure is not None:
            meta["failureReason"] = self.failure.reason
        return meta
