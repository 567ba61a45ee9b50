#!/usr/bin/env python3
"""
Segment files at rest on the receiver.

Layout: ``<base>/<agent>/<YYYY-MM-DD>/<file>``. A segment's identity is the
pair (screen id, trailing timestamp) parsed from its file name; listings drop
later files that repeat a pair. WebM/Matroska files are recognised by the EBML
magic at offset 0.
"""
from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional

EBML_MAGIC = b"\x1a\x45\xdf\xa3"
MERGED_PREFIX = "merged-"
DEFAULT_SCREEN_ID = "default"

_HOSTILE_RE = re.compile(r'[\\/:*?"<>|]|\s+')
# Digits after a separator, unless they are the screen number (e.g. "screen-2.webm").
_TIMESTAMP_RE = re.compile(
    r"(?<!screen)(?<!display)(?<!monitor)[-_](\d+)\.[A-Za-z0-9]+$", re.IGNORECASE
)
_SCREEN_RE = re.compile(r"(?:screen|display|monitor)[-_]?(\d+)", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})")

LOG = logging.getLogger("receiver")


def sanitize_segment(value: Optional[str], fallback: str) -> str:
    """Make one path component safe; ``fallback`` when nothing usable remains."""
    cleaned = _HOSTILE_RE.sub("-", str(value or ""))
    cleaned = cleaned.strip(".- ")
    return cleaned or fallback


def normalize_iso_date(value: Optional[str], today: Optional[date] = None) -> str:
    today = today or date.today()
    match = _ISO_DATE_RE.match((value or "").strip())
    if match:
        try:
            return datetime.strptime(match.group(1), "%Y-%m-%d").strftime("%Y-%m-%d")
        except ValueError:
            pass
    return today.strftime("%Y-%m-%d")


def extract_timestamp(file_name: str) -> Optional[int]:
    match = _TIMESTAMP_RE.search(file_name)
    return int(match.group(1)) if match else None


def extract_screen_id(file_name: str) -> str:
    match = _SCREEN_RE.search(file_name)
    if not match:
        return DEFAULT_SCREEN_ID
    return f"screen{int(match.group(1))}"


def compile_pattern(raw: Optional[str]) -> Optional[re.Pattern[str]]:
    """Compile a user supplied name filter; raises ValueError when invalid."""
    if not raw:
        return None
    try:
        return re.compile(raw)
    except re.error as exc:
        raise ValueError(f"invalid pattern {raw!r}: {exc}") from exc


@dataclass(frozen=True)
class SegmentFile:
    agent: str
    iso_date: str
    file_name: str
    path: Path
    screen_id: str
    timestamp_ms: Optional[int]
    size: int = 0

    @property
    def identity(self) -> tuple[str, Optional[int]]:
        return (self.screen_id, self.timestamp_ms)

    def to_payload(self) -> dict:
        return {
            "agentName": self.agent,
            "isoDate": self.iso_date,
            "fileName": self.file_name,
            "screenId": self.screen_id,
            "timestampMs": self.timestamp_ms,
            "size": self.size,
        }


def find_segments(
    folder: Path,
    *,
    agent: str,
    iso_date: str,
    pattern: Optional[re.Pattern[str]] = None,
    allowed_ext: Iterable[str] = (".webm",),
) -> tuple[list[SegmentFile], list[str]]:
    """Return (segments ordered by timestamp, names skipped as duplicates)."""
    allowed = {ext.lower() for ext in allowed_ext}
    try:
        names = sorted(entry.name for entry in folder.iterdir() if entry.is_file())
    except FileNotFoundError:
        return [], []

    segments: list[SegmentFile] = []
    skipped: list[str] = []
    seen: set[tuple[str, int]] = set()
    for name in names:
        if name.startswith(MERGED_PREFIX):
            continue
        if Path(name).suffix.lower() not in allowed:
            continue
        if pattern is not None and not pattern.search(name):
            continue
        path = folder / name
        segment = SegmentFile(
            agent=agent,
            iso_date=iso_date,
            file_name=name,
            path=path,
            screen_id=extract_screen_id(name),
            timestamp_ms=extract_timestamp(name),
            size=path.stat().st_size,
        )
        if segment.timestamp_ms is not None:
            key = (segment.screen_id, segment.timestamp_ms)
            if key in seen:
                LOG.info("Skipping duplicate segment %s (%s @ %s)", name, *key)
                skipped.append(name)
                continue
            seen.add(key)
        segments.append(segment)

    segments.sort(key=lambda seg: (seg.timestamp_ms if seg.timestamp_ms is not None else -1, seg.file_name))
    return segments, skipped


def group_by_screen(segments: Iterable[SegmentFile]) -> dict[str, list[SegmentFile]]:
    groups: dict[str, list[SegmentFile]] = {}
    for segment in segments:
        groups.setdefault(segment.screen_id, []).append(segment)
    return groups


def is_valid_header(path: Path) -> bool:
    try:
        with path.open("rb") as handle:
            return handle.read(len(EBML_MAGIC)) == EBML_MAGIC
    except OSError:
        return False


def find_magic_offset(path: Path, limit: int = 4 * 1024 * 1024) -> Optional[int]:
    """Offset of the first EBML magic within the first ``limit`` bytes."""
    with path.open("rb") as handle:
        head = handle.read(max(0, int(limit)))
    offset = head.find(EBML_MAGIC)
    return offset if offset >= 0 else None


def write_trimmed_copy(source: Path, destination: Path, offset: int) -> int:
    """Copy ``source`` from ``offset`` onward; returns the bytes written."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_name(destination.name + ".tmp")
    with source.open("rb") as src, tmp_path.open("wb") as dst:
        src.seek(offset)
        shutil.copyfileobj(src, dst, 1024 * 1024)
        written = dst.tell()
    tmp_path.replace(destination)
    return written
