#!/usr/bin/env python3
"""
Screen capture backends.

A backend enumerates capturable screens and opens a ``CaptureHandle`` per
screen. Handles expose the latest frame for health sampling, emit encoded
chunks on a fixed time slice, and report mute/end events.

MssScreenBackend:
- Grabs monitor pixels with mss on a dedicated thread at the profile fps.
- Pipes raw BGRA frames into ffmpeg (VP9/WebM) and cuts ffmpeg's stdout into
  chunks every ``timeslice_ms``.
- Several consecutive grab failures mark the track muted; the encoder exiting
  on its own ends the track.
"""

from __future__ import annotations

import logging
import queue
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import mss
from mss.exception import ScreenShotError
import numpy as np

ChunkCallback = Callable[[bytes], None]
Listener = Callable[..., None]

MUTE_AFTER_FAILED_GRABS = 5
ENCODER_INPUT_DRAIN_SEC = 5.0
ENCODER_OUTPUT_DRAIN_SEC = 10.0


class CaptureDeviceError(RuntimeError):
    """Raised when a capture source cannot be opened."""


@dataclass(frozen=True)
class CaptureSource:
    id: str
    name: str


@dataclass(frozen=True)
class ResolutionProfile:
    width: int
    height: int
    fps: int

    @property
    def label(self) -> str:
        return f"{self.width}x{self.height}@{self.fps}"

    def as_dict(self) -> dict[str, int]:
        return {"width": self.width, "height": self.height, "fps": self.fps}


class CaptureHandle:
    """Open capture device for one screen source."""

    supports_frame_callbacks = False

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {"frame": [], "mute": [], "ended": []}
        self._listener_lock = threading.Lock()
        self._muted = False
        self._ended = False

    # --- events ---
    def add_listener(self, event: str, callback: Listener) -> None:
        with self._listener_lock:
            self._listeners[event].append(callback)

    def remove_listeners(self) -> None:
        with self._listener_lock:
            for callbacks in self._listeners.values():
                callbacks.clear()

    def _emit(self, event: str, *args) -> None:
        with self._listener_lock:
            callbacks = list(self._listeners[event])
        for callback in callbacks:
            callback(*args)

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def ended(self) -> bool:
        return self._ended

    def _set_muted(self, muted: bool) -> None:
        if muted == self._muted:
            return
        self._muted = muted
        self._emit("mute", muted)

    def _mark_ended(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._emit("ended")

    # --- capture ---
    def read_frame(self) -> Optional[np.ndarray]:  # pragma: no cover - interface only
        raise NotImplementedError

    def start_chunks(self, timeslice_ms: int, on_chunk: ChunkCallback) -> None:  # pragma: no cover
        raise NotImplementedError

    def stop_chunks(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class CaptureBackend:
    """Minimal protocol for capture hosts."""

    def list_sources(self) -> list[CaptureSource]:  # pragma: no cover - interface only
        raise NotImplementedError

    def open(self, source: CaptureSource, profile: ResolutionProfile) -> CaptureHandle:  # pragma: no cover
        raise NotImplementedError


class MssCaptureHandle(CaptureHandle):
    supports_frame_callbacks = True

    def __init__(
        self,
        monitor: dict[str, int],
        profile: ResolutionProfile,
        *,
        ffmpeg_path: str = "ffmpeg",
        encoder: dict[str, str] | None = None,
    ) -> None:
        super().__init__()
        self.monitor = dict(monitor)
        self.profile = profile
        self.ffmpeg_path = ffmpeg_path
        self.encoder = dict(encoder or {})

        self._log = logging.getLogger("capture")
        self._stop = threading.Event()
        self._frame_lock = threading.Lock()
        self._latest: Optional[np.ndarray] = None
        self._last_grab_ok = False
        self._failed_grabs = 0

        self._encode_q: "queue.Queue[bytes]" = queue.Queue(maxsize=max(2, profile.fps * 2))
        self._proc: Optional[subprocess.Popen] = None
        self._writer: Optional[threading.Thread] = None
        self._reader: Optional[threading.Thread] = None
        self._encoding = threading.Event()
        self._stopping_chunks = False

        self._grabber = threading.Thread(target=self._grab_loop, name="mss_grab", daemon=True)
        self._grabber.start()

    # --- grabbing ---
    def _grab_loop(self) -> None:
        try:
            sct = mss.mss()
        except Exception as exc:  # noqa: BLE001 - mss raises platform specific display errors
            self._log.error("screen grabber unavailable for %s: %s", self.monitor, exc)
            self._mark_ended()
            return
        interval = 1.0 / max(1, self.profile.fps)
        with sct:
            while not self._stop.is_set():
                started = time.monotonic()
                try:
                    shot = sct.grab(self.monitor)
                except ScreenShotError as exc:
                    self._failed_grabs += 1
                    self._last_grab_ok = False
                    self._log.debug("grab failed for %s: %s", self.monitor, exc)
                    if self._failed_grabs >= MUTE_AFTER_FAILED_GRABS:
                        self._set_muted(True)
                else:
                    bgra = np.asarray(shot)
                    with self._frame_lock:
                        self._latest = bgra
                    self._failed_grabs = 0
                    self._last_grab_ok = True
                    self._set_muted(False)
                    self._emit("frame")
                    if self._encoding.is_set():
                        self._feed(bgra.tobytes())
                elapsed = time.monotonic() - started
                self._stop.wait(max(0.0, interval - elapsed))

    def read_frame(self) -> Optional[np.ndarray]:
        if not self._last_grab_ok:
            return None
        with self._frame_lock:
            bgra = self._latest
        if bgra is None:
            return None
        return bgra[:, :, 2::-1]

    def _feed(self, raw: bytes) -> None:
        try:
            self._encode_q.put_nowait(raw)
        except queue.Full:
            try:
                self._encode_q.get_nowait()
            except queue.Empty:
                pass
            try:
                self._encode_q.put_nowait(raw)
            except queue.Full:
                pass

    # --- encoding ---
    def _ffmpeg_cmd(self) -> list[str]:
        width, height = int(self.monitor["width"]), int(self.monitor["height"])
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "warning",
            "-f", "rawvideo",
            "-pix_fmt", "bgra",
            "-s", f"{width}x{height}",
            "-r", str(self.profile.fps),
            "-i", "pipe:0",
            "-vf", f"scale={self.profile.width}:{self.profile.height}",
            "-c:v", self.encoder.get("codec", "libvpx-vp9"),
            "-b:v", self.encoder.get("bitrate", "1M"),
            "-deadline", self.encoder.get("deadline", "realtime"),
            "-f", "webm",
            "pipe:1",
        ]

    def start_chunks(self, timeslice_ms: int, on_chunk: ChunkCallback) -> None:
        if self._proc is not None:
            raise RuntimeError("chunk emission already started")
        cmd = self._ffmpeg_cmd()
        self._log.info("Launching ffmpeg: %s", " ".join(cmd))
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as exc:
            raise CaptureDeviceError(f"unable to start encoder: {exc}") from exc
        self._encoding.set()
        self._writer = threading.Thread(target=self._write_loop, name="mss_encode_in", daemon=True)
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(max(1, int(timeslice_ms)) / 1000.0, on_chunk),
            name="mss_encode_out",
            daemon=True,
        )
        self._writer.start()
        self._reader.start()

    def _write_loop(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdin is not None
        try:
            while self._encoding.is_set() or not self._encode_q.empty():
                try:
                    raw = self._encode_q.get(timeout=0.05)
                except queue.Empty:
                    continue
                try:
                    proc.stdin.write(raw)
                except (BrokenPipeError, OSError):
                    self._log.warning("ffmpeg pipe broken for %s", self.monitor)
                    break
        finally:
            try:
                proc.stdin.close()
            except OSError:
                pass

    def _read_loop(self, timeslice: float, on_chunk: ChunkCallback) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        buffer = bytearray()
        deadline = time.monotonic() + timeslice
        while True:
            data = proc.stdout.read(65536)
            if data:
                buffer.extend(data)
            now = time.monotonic()
            if buffer and (now >= deadline or not data):
                on_chunk(bytes(buffer))
                buffer.clear()
                deadline = now + timeslice
            if not data:
                break
        rc = proc.wait()
        if not self._stopping_chunks:
            self._log.warning("ffmpeg exited unexpectedly (rc=%s)", rc)
            self._mark_ended()

    def stop_chunks(self) -> None:
        self._stopping_chunks = True
        self._encoding.clear()
        if self._writer is not None:
            self._writer.join(timeout=ENCODER_INPUT_DRAIN_SEC)
        if self._reader is not None:
            self._reader.join(timeout=ENCODER_OUTPUT_DRAIN_SEC)
        proc = self._proc
        if proc is not None and proc.poll() is None:
            self._log.warning("ffmpeg still running after drain; killing")
            proc.kill()
            proc.wait(timeout=2.0)

    def close(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        if self._proc is not None and self._encoding.is_set():
            self.stop_chunks()
        self._grabber.join(timeout=2.0)
        self.remove_listeners()


class MssScreenBackend(CaptureBackend):
    def __init__(self, *, ffmpeg_path: str = "", encoder: dict[str, str] | None = None) -> None:
        self.ffmpeg_path = ffmpeg_path or shutil.which("ffmpeg") or "ffmpeg"
        self.encoder = dict(encoder or {})

    def _monitors(self) -> list[dict[str, int]]:
        try:
            with mss.mss() as sct:
                # monitors[0] is the union of all screens.
                return [dict(m) for m in sct.monitors[1:]]
        except Exception as exc:  # noqa: BLE001 - mss raises platform specific display errors
            raise CaptureDeviceError(f"unable to enumerate screens: {exc}") from exc

    def list_sources(self) -> list[CaptureSource]:
        return [
            CaptureSource(id=f"screen:{idx}", name=f"Screen {idx}")
            for idx, _ in enumerate(self._monitors(), start=1)
        ]

    def open(self, source: CaptureSource, profile: ResolutionProfile) -> CaptureHandle:
        try:
            index = int(source.id.split(":", 1)[1])
        except (IndexError, ValueError) as exc:
            raise CaptureDeviceError(f"unknown source id {source.id!r}") from exc
        monitors = self._monitors()
        if not 1 <= index <= len(monitors):
            raise CaptureDeviceError(f"source {source.id} is not connected")
        monitor = monitors[index - 1]
        try:
            with mss.mss() as sct:
                sct.grab(monitor)
        except Exception as exc:  # noqa: BLE001 - mss raises platform specific display errors
            raise CaptureDeviceError(f"cannot grab {source.id}: {exc}") from exc
        return MssCaptureHandle(
            monitor,
            profile,
            ffmpeg_path=self.ffmpeg_path,
            encoder=self.encoder,
        )
