"""Startup probe and runtime watchdog for an active capture handle.

The startup probe decides whether a resolution profile produced real pixels.
The runtime monitor ticks once per second and classifies the failures that
keep chunk emission going while the picture is useless: black screens, frozen
images, failed frame reads, stalled frame delivery, muted or ended tracks.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from screenrec.capture_backend import CaptureHandle
from screenrec.frame_analysis import is_black_frame, luma_fingerprint, sample_surface

BLACK_SCREEN_DETECTED = "black-screen-detected"
INPUT_TRACK_MUTED = "input-track-muted-too-long"
INPUT_TRACK_ENDED = "input-track-ended"
RUNTIME_BLACK_FRAMES = "runtime-black-frames"
RUNTIME_STALE_FRAME = "runtime-stale-frame-detected"
RUNTIME_DRAW_FAILED = "runtime-draw-failed"
RUNTIME_FRAME_CALLBACK_TIMEOUT = "runtime-frame-callback-timeout"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class HealthSettings:
    warmup_ms: int = 350
    probe_samples: int = 10
    probe_interval_ms: int = 120
    probe_black_ratio: float = 0.8
    black_channel_threshold: int = 24
    black_min_content_ratio: float = 0.01
    tick_interval_ms: int = 1000
    heavy_check_every: int = 2
    muted_timeout_ms: int = 8000
    runtime_black_streak: int = 10
    stale_frame_checks: int = 90
    draw_failure_streak: int = 12
    frame_callback_timeout_ms: int = 20000
    failure_cooldown_ms: int = 4000

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None) -> "HealthSettings":
        cfg = cfg or {}
        values: dict[str, Any] = {}
        for name, default in cls().__dict__.items():
            raw = cfg.get(name, default)
            try:
                values[name] = type(default)(raw)
            except (TypeError, ValueError):
                values[name] = default
        return cls(**values)


class LatchState(enum.Enum):
    IDLE = "idle"
    REPORTED = "reported"
    COOLING_DOWN = "cooling-down"


class FailureLatch:
    """Debounce for fatal reports: Idle -> Reported -> CoolingDown -> Idle."""

    def __init__(self, cooldown_ms: float = 4000.0):
        self.cooldown_ms = max(0.0, float(cooldown_ms))
        self._lock = threading.Lock()
        self._state = LatchState.IDLE
        self._cooldown_until = 0.0

    def _advance(self, now_ms: float) -> None:
        if self._state is LatchState.COOLING_DOWN and now_ms >= self._cooldown_until:
            self._state = LatchState.IDLE

    def state(self, now_ms: float) -> LatchState:
        with self._lock:
            self._advance(now_ms)
            return self._state

    def try_report(self, now_ms: float) -> bool:
        with self._lock:
            self._advance(now_ms)
            if self._state is not LatchState.IDLE:
                return False
            self._state = LatchState.REPORTED
            return True

    def acknowledge(self, now_ms: float) -> None:
        with self._lock:
            if self._state is LatchState.REPORTED:
                self._state = LatchState.COOLING_DOWN
                self._cooldown_until = now_ms + self.cooldown_ms


@dataclass
class FailureReport:
    reason: str
    label: str = ""
    source_id: str = ""
    instance_id: str = ""
    requested_profile: dict[str, int] | None = None
    actual_profile: dict[str, int] | None = None
    counters: dict[str, int] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_payload(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "label": self.label,
            "sourceId": self.source_id,
            "instanceId": self.instance_id,
            "requestedProfile": self.requested_profile,
            "actualProfile": self.actual_profile,
            "counters": dict(self.counters),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    black_samples: int
    total_samples: int
    reason: str | None = None


class ProbeCancelled(Exception):
    """Raised when a session is stopped while its startup probe runs."""


def _frame_is_black(handle: CaptureHandle, settings: HealthSettings) -> bool:
    frame = handle.read_frame()
    if frame is None:
        return True
    try:
        sample = sample_surface(frame)
    except ValueError:
        return True
    return is_black_frame(
        sample,
        channel_threshold=settings.black_channel_threshold,
        min_content_ratio=settings.black_min_content_ratio,
    )


def run_startup_probe(
    handle: CaptureHandle,
    settings: HealthSettings,
    *,
    sleep: Callable[[float], None] = time.sleep,
    cancel: threading.Event | None = None,
) -> ProbeResult:
    """Sample a freshly opened handle and reject it when it only shows black.

    Unreadable frames count as black.
    """

    def _wait(ms: float) -> None:
        if cancel is not None:
            if cancel.wait(ms / 1000.0):
                raise ProbeCancelled()
        else:
            sleep(ms / 1000.0)

    _wait(settings.warmup_ms)
    total = max(1, settings.probe_samples)
    black = 0
    for idx in range(total):
        if idx:
            _wait(settings.probe_interval_ms)
        if _frame_is_black(handle, settings):
            black += 1
    if black >= settings.probe_black_ratio * total:
        return ProbeResult(False, black, total, BLACK_SCREEN_DETECTED)
    return ProbeResult(True, black, total)


class HealthMonitor:
    """Runtime watchdog for one capture session."""

    def __init__(
        self,
        handle: CaptureHandle,
        settings: HealthSettings,
        on_failure: Callable[[FailureReport], None],
        *,
        clock: Callable[[], float] = _monotonic_ms,
        context: Mapping[str, Any] | None = None,
    ):
        self.handle = handle
        self.settings = settings
        self._on_failure = on_failure
        self._clock = clock
        self._context = dict(context or {})
        self._log = logging.getLogger("health")
        self.latch = FailureLatch(settings.failure_cooldown_ms)

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failed_reason: str | None = None

        started = self._clock()
        self._ticks = 0
        self._muted_since: float | None = started if handle.muted else None
        self._last_frame_at = started
        self._black_streak = 0
        self._stale_streak = 0
        self._draw_failures = 0
        self._last_fingerprint: bytes | None = None

        handle.add_listener("frame", lambda *_: self.notify_frame())
        handle.add_listener("mute", lambda muted: self.notify_muted(bool(muted)))
        handle.add_listener("ended", lambda *_: self.notify_track_ended())

    # --- platform events ---
    def notify_frame(self, now_ms: float | None = None) -> None:
        with self._lock:
            self._last_frame_at = self._clock() if now_ms is None else now_ms

    def notify_muted(self, muted: bool, now_ms: float | None = None) -> None:
        now = self._clock() if now_ms is None else now_ms
        with self._lock:
            if muted:
                if self._muted_since is None:
                    self._muted_since = now
            else:
                self._muted_since = None

    def notify_track_ended(self) -> None:
        self._report(INPUT_TRACK_ENDED, self._clock())

    # --- checks ---
    @property
    def failed_reason(self) -> str | None:
        return self._failed_reason

    def counters(self) -> dict[str, int]:
        with self._lock:
            return {
                "ticks": self._ticks,
                "black_streak": self._black_streak,
                "stale_streak": self._stale_streak,
                "draw_failures": self._draw_failures,
            }

    def tick(self, now_ms: float | None = None) -> str | None:
        """Run one 1 s tick; heavy frame checks happen every other tick."""
        now = self._clock() if now_ms is None else now_ms
        if self._failed_reason is not None:
            return None
        with self._lock:
            self._ticks += 1
            ticks = self._ticks
            reason = self._light_checks(now)
        if reason is None and ticks % max(1, self.settings.heavy_check_every) == 0:
            return self.sample_once(now)
        if reason is not None:
            self._report(reason, now)
        return reason

    def _light_checks(self, now: float) -> str | None:
        s = self.settings
        if self._muted_since is not None and now - self._muted_since > s.muted_timeout_ms:
            return INPUT_TRACK_MUTED
        if self.handle.supports_frame_callbacks and now - self._last_frame_at > s.frame_callback_timeout_ms:
            return RUNTIME_FRAME_CALLBACK_TIMEOUT
        return None

    def sample_once(self, now_ms: float | None = None) -> str | None:
        """Heavy check: read a frame, then update black/freeze/draw streaks."""
        now = self._clock() if now_ms is None else now_ms
        if self._failed_reason is not None:
            return None
        try:
            frame = self.handle.read_frame()
        except Exception as exc:  # noqa: BLE001 - any read error is a failed draw
            self._log.debug("frame read failed: %r", exc)
            frame = None

        s = self.settings
        black = False
        fingerprint: bytes | None = None
        if frame is not None:
            try:
                sample = sample_surface(frame)
                black = is_black_frame(
                    sample,
                    channel_threshold=s.black_channel_threshold,
                    min_content_ratio=s.black_min_content_ratio,
                )
                fingerprint = luma_fingerprint(sample)
            except ValueError as exc:
                self._log.debug("unusable frame: %s", exc)
                fingerprint = None

        reason: str | None = None
        with self._lock:
            if fingerprint is None:
                self._draw_failures += 1
                if self._draw_failures >= s.draw_failure_streak:
                    reason = RUNTIME_DRAW_FAILED
            else:
                self._draw_failures = 0
                self._black_streak = self._black_streak + 1 if black else 0

                if self._last_fingerprint is not None and fingerprint == self._last_fingerprint:
                    self._stale_streak += 1
                else:
                    self._stale_streak = 0
                self._last_fingerprint = fingerprint

                if self._black_streak >= s.runtime_black_streak:
                    reason = RUNTIME_BLACK_FRAMES
                elif self._stale_streak >= s.stale_frame_checks:
                    reason = RUNTIME_STALE_FRAME
        if reason is not None:
            self._report(reason, now)
        return reason

    def _report(self, reason: str, now: float) -> bool:
        if not self.latch.try_report(now):
            return False
        self._failed_reason = reason
        report = FailureReport(
            reason=reason,
            label=str(self._context.get("label", "")),
            source_id=str(self._context.get("source_id", "")),
            instance_id=str(self._context.get("instance_id", "")),
            requested_profile=self._context.get("requested_profile"),
            actual_profile=self._context.get("actual_profile"),
            counters=self.counters(),
        )
        self._log.warning(
            "capture failure on %s: %s (%s)", report.label or report.source_id, reason, report.counters
        )
        try:
            self._on_failure(report)
        finally:
            self.latch.acknowledge(self._clock())
        return True

    # --- lifecycle ---
    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="health_monitor", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        interval = max(0.01, self.settings.tick_interval_ms / 1000.0)
        while not self._stop_event.wait(interval):
            self.tick()
            if self._failed_reason is not None:
                break

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
