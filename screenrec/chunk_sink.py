"""Where a capture session puts its encoded chunks."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from screenrec.transfer_client import DeliveryResult, TransferClient, TransferError, recording_file_name

LOG = logging.getLogger("capture")

CHUNK_WRITE_FAILED = "chunk-write-failed"


class ChunkSink:
    """Destination chosen once per session when recording starts."""

    streaming = False

    def __init__(self) -> None:
        self.chunks_written = 0
        self.bytes_written = 0
        self.write_errors = 0
        self.error: str | None = None

    def write(self, chunk: bytes) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def finalize(self, meta: dict[str, Any] | None = None) -> DeliveryResult:  # pragma: no cover
        raise NotImplementedError


class DiskSink(ChunkSink):
    """Streams chunks into the transfer client's temp file.

    The first failed append latches the sink: later chunks are refused so the
    file never has a hole in the middle, and finalize keeps the file locally
    instead of delivering it.
    """

    streaming = True

    def __init__(self, transfer: TransferClient, source_id: str) -> None:
        super().__init__()
        self.transfer = transfer
        self.source_id = source_id
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            if self.error is not None:
                self.write_errors += 1
                raise TransferError(f"recording for {self.source_id} already failed: {self.error}")
            try:
                self.transfer.append_chunk(self.source_id, chunk)
            except (TransferError, OSError) as exc:
                self.write_errors += 1
                self.error = str(exc) or type(exc).__name__
                LOG.error("chunk write failed for %s: %s", self.source_id, exc)
                raise TransferError(f"chunk write failed for {self.source_id}: {exc}") from exc
            self.chunks_written += 1
            self.bytes_written += len(chunk)

    def finalize(self, meta: dict[str, Any] | None = None) -> DeliveryResult:
        meta = dict(meta or {})
        with self._lock:
            if self.write_errors:
                meta["writeErrors"] = self.write_errors
            failure = CHUNK_WRITE_FAILED if self.error is not None else None
            return self.transfer.finalize(self.source_id, meta, failure=failure)


class MemorySink(ChunkSink):
    def __init__(
        self,
        transfer: TransferClient,
        label: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.transfer = transfer
        self.label = label
        self._clock = clock
        self._lock = threading.Lock()
        self._chunks: list[bytes] = []

    def write(self, chunk: bytes) -> None:
        with self._lock:
            self._chunks.append(bytes(chunk))
            self.chunks_written += 1
            self.bytes_written += len(chunk)

    def finalize(self, meta: dict[str, Any] | None = None) -> DeliveryResult:
        with self._lock:
            data = b"".join(self._chunks)
            self._chunks.clear()
        name = recording_file_name(self.label, int(self._clock() * 1000), self.transfer.container_ext)
        return self.transfer.save(name, data, meta)


def select_sink(transfer: TransferClient, source_id: str, label: str) -> ChunkSink:
    try:
        transfer.create_temp_file(source_id, label)
    except TransferError as exc:
        LOG.warning("Buffering %s in memory: %s", label, exc)
        return MemorySink(transfer, label)
    return DiskSink(transfer, source_id)
