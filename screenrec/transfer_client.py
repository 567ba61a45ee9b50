#!/usr/bin/env python3
"""Local recording files and their delivery to the ingestion receiver.

Chunks stream into a ``.part`` file per capture source. On finalize the file is
renamed to ``recording-<label>-<epochMs>.webm`` and POSTed to the receiver
with size/hash headers. The uploaded ledger makes repeated deliveries of the
same file name a no-op, and a failed delivery leaves the local file in place
for a later retry.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from screenrec.ledger import RuntimeStore

TEMP_SUFFIX = ".part"


class TransferError(RuntimeError):
    """Raised when a local recording file cannot be created or written."""


def recording_file_name(label: str, epoch_ms: int, ext: str = ".webm") -> str:
    safe_label = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in label) or "screen"
    return f"recording-{safe_label}-{int(epoch_ms)}{ext}"


def file_md5(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


@dataclass
class DeliveryResult:
    success: bool
    file_name: str
    path: Path | None = None
    uploaded: bool = False
    skipped: str | None = None
    error: str | None = None
    response: dict[str, Any] | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "fileName": self.file_name,
            "uploaded": self.uploaded,
        }
        if self.path is not None:
            payload["filePath"] = str(self.path)
        if self.skipped:
            payload["skipped"] = self.skipped
        if self.error:
            payload["error"] = self.error
        if self.meta:
            payload["meta"] = dict(self.meta)
        return payload


@dataclass
class _TempRecording:
    source_id: str
    label: str
    path: Path
    started_ms: int
    lock: threading.Lock = field(default_factory=threading.Lock)
    handle: IO[bytes] | None = None
    pending: list[bytes] = field(default_factory=list)
    bytes_written: int = 0

    @property
    def ready(self) -> bool:
        return self.handle is not None


class TransferClient:
    def __init__(
        self,
        store: RuntimeStore,
        *,
        opener: Callable[..., Any] = urlopen,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._opener = opener
        self._clock = clock
        self._log = logging.getLogger("transfer")
        self._lock = threading.Lock()
        self._temp: dict[str, _TempRecording] = {}
        self._housekeeping_done = False

        settings = store.settings("transfer")
        self.receiver_url = str(settings.get("receiver_url") or "").strip()
        self.timeout = float(settings.get("timeout_sec") or 120.0)
        self.stale_file_hours = float(settings.get("stale_file_hours") or 24.0)
        self.container_ext = str(store.settings("capture").get("container_ext") or ".webm")

    @property
    def recordings_dir(self) -> Path:
        return self.store.recordings_dir

    # --- housekeeping ---
    def purge_stale_files(self, now: float | None = None) -> list[Path]:
        """Delete leftovers from crashed runs that are older than the cutoff."""
        now = self._clock() if now is None else now
        cutoff = now - self.stale_file_hours * 3600.0
        removed: list[Path] = []
        with self._lock:
            active = {entry.path for entry in self._temp.values()}
            self._housekeeping_done = True
        try:
            candidates = list(self.recordings_dir.iterdir())
        except FileNotFoundError:
            return removed
        for path in candidates:
            if path in active or not path.is_file():
                continue
            if path.suffix not in (self.container_ext, TEMP_SUFFIX):
                continue
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                self._log.warning("Unable to remove stale recording %s: %s", path, exc)
                continue
            removed.append(path)
        if removed:
            self._log.info("Removed %d stale recording file(s)", len(removed))
        return removed

    def _ensure_housekeeping(self) -> None:
        with self._lock:
            done = self._housekeeping_done
        if not done:
            self.purge_stale_files()

    # --- streaming ---
    def _open_destination(self, path: Path) -> IO[bytes]:
        path.parent.mkdir(parents=True, exist_ok=True)
        return path.open("xb")

    def create_temp_file(self, source_id: str, label: str) -> Path:
        self._ensure_housekeeping()
        started_ms = int(self._clock() * 1000)
        path = self.recordings_dir / f"{recording_file_name(label, started_ms, '')}{TEMP_SUFFIX}"
        entry = _TempRecording(source_id=source_id, label=label, path=path, started_ms=started_ms)
        with self._lock:
            if source_id in self._temp:
                raise TransferError(f"temp file already open for {source_id}")
            self._temp[source_id] = entry
        try:
            handle = self._open_destination(path)
        except OSError as exc:
            with self._lock:
                self._temp.pop(source_id, None)
            raise TransferError(f"unable to create {path}: {exc}") from exc

        with entry.lock:
            for chunk in entry.pending:
                handle.write(chunk)
                entry.bytes_written += len(chunk)
            entry.pending.clear()
            entry.handle = handle
        self._log.info("Streaming %s to %s", source_id, path)
        return path

    def append_chunk(self, source_id: str, data: bytes) -> None:
        with self._lock:
            entry = self._temp.get(source_id)
        if entry is None:
            raise TransferError(f"no temp file for {source_id}")
        with entry.lock:
            if entry.handle is None:
                entry.pending.append(bytes(data))
                return
            entry.handle.write(data)
            entry.bytes_written += len(data)

    def finalize(
        self,
        source_id: str,
        meta: dict[str, Any] | None = None,
        *,
        failure: str | None = None,
    ) -> DeliveryResult:
        """Close and rename the temp file, then deliver it.

        With ``failure`` set the recording is known to be incomplete: it is kept
        locally under its final name and reported as failed, never uploaded.
        """
        with self._lock:
            entry = self._temp.pop(source_id, None)
        if entry is None:
            raise TransferError(f"no temp file for {source_id}")
        with entry.lock:
            if entry.handle is not None:
                entry.handle.flush()
                os.fsync(entry.handle.fileno())
                entry.handle.close()
                entry.handle = None
            size = entry.bytes_written

        now_ms = int(self._clock() * 1000)
        meta = dict(meta or {})
        meta.setdefault("durationMs", max(0, now_ms - entry.started_ms))
        file_name = recording_file_name(entry.label, now_ms, self.container_ext)
        if size == 0:
            entry.path.unlink(missing_ok=True)
            if failure:
                return DeliveryResult(False, file_name, error=failure, meta=meta)
            self._log.info("Dropped empty recording for %s", source_id)
            return DeliveryResult(True, file_name, skipped="empty-recording", meta=meta)

        final_path = entry.path.with_name(file_name)
        os.replace(entry.path, final_path)
        if failure:
            self._log.error("Keeping incomplete recording %s locally: %s", final_path.name, failure)
            return DeliveryResult(False, file_name, path=final_path, error=failure, meta=meta)
        self._log.info("Finalized %s (%d bytes)", final_path.name, size)
        return self.deliver(final_path, meta)

    def save(self, file_name: str, data: bytes, meta: dict[str, Any] | None = None) -> DeliveryResult:
        """Fallback for sessions that never had a temp file: write the buffer and deliver it."""
        self._ensure_housekeeping()
        name = Path(file_name).name
        meta = dict(meta or {})
        if not data:
            return DeliveryResult(True, name, skipped="empty-recording", meta=meta)
        path = self.recordings_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        self._log.info("Saved %s from memory (%d bytes)", name, len(data))
        return self.deliver(path, meta)

    # --- delivery ---
    def _headers(self, path: Path) -> dict[str, str]:
        headers = {
            "Content-Type": "application/octet-stream",
            "X-Agent-Name": self.store.agent_name or socket.gethostname(),
            "X-File-Name": path.name,
            "X-Iso-Date": datetime.now().strftime("%Y-%m-%d"),
            "X-File-Size": str(path.stat().st_size),
            "X-File-Hash": file_md5(path),
        }
        if self.store.receiver_token:
            headers["Authorization"] = f"Bearer {self.store.receiver_token}"
        return headers

    def deliver(self, path: Path, meta: dict[str, Any] | None = None) -> DeliveryResult:
        name = path.name
        meta = dict(meta or {})
        if name in self.store.ledger:
            self._log.info("Skipping %s: already uploaded", name)
            path.unlink(missing_ok=True)
            return DeliveryResult(True, name, skipped="already-uploaded", meta=meta)

        if not self.receiver_url:
            return DeliveryResult(True, name, path=path, meta=meta)

        request = Request(
            self.receiver_url,
            data=path.read_bytes(),
            method="POST",
            headers=self._headers(path),
        )
        try:
            with self._opener(request, timeout=self.timeout) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = _parse_json(exc.read())
            error = str(detail.get("error") or f"http-{exc.code}")
            self._log.warning("Upload of %s rejected (%s): %s", name, exc.code, error)
            return DeliveryResult(False, name, path=path, error=error, response=detail, meta=meta)
        except (URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            self._log.warning("Upload of %s failed: %s", name, reason)
            return DeliveryResult(False, name, path=path, error=str(reason), meta=meta)

        payload = _parse_json(raw)
        if not payload.get("success"):
            error = str(payload.get("error") or "unexpected-response")
            self._log.warning("Upload of %s not confirmed: %s", name, error)
            return DeliveryResult(False, name, path=path, error=error, response=payload, meta=meta)

        self.store.ledger.add(name)
        path.unlink(missing_ok=True)
        self._log.info("Uploaded %s (%s bytes)", name, payload.get("size"))
        return DeliveryResult(True, name, uploaded=True, response=payload, meta=meta)


def _parse_json(raw: bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}
