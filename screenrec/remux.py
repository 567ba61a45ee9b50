"""ffmpeg invocations used by the receiver: duration fix, concat merge, repair."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from screenrec.segments import find_magic_offset, write_trimmed_copy

LOG = logging.getLogger("remux")


class RemuxTimeout(RuntimeError):
    """ffmpeg did not exit within the configured timeout."""


@dataclass(frozen=True)
class RemuxResult:
    ok: bool
    returncode: Optional[int]
    output: Optional[Path] = None
    error: str = ""

    def to_payload(self) -> dict:
        payload = {"ok": self.ok, "returncode": self.returncode}
        if self.output is not None:
            payload["output"] = str(self.output)
        if self.error:
            payload["error"] = self.error
        return payload


def find_ffmpeg_path(configured: str = "") -> str:
    if configured:
        return configured
    return shutil.which("ffmpeg") or "ffmpeg"


def repaired_path(source: Path) -> Path:
    return source.parent / "repaired" / f"{source.stem}.fixed{source.suffix or '.webm'}"


def _concat_line(path: Path) -> str:
    escaped = str(path.resolve()).replace("'", "'\\''")
    return f"file '{escaped}'\n"


class RemuxRunner:
    def __init__(self, ffmpeg_path: str = "", timeout: float = 600.0):
        self.ffmpeg_path = find_ffmpeg_path(ffmpeg_path)
        self.timeout = float(timeout)

    async def _run(self, args: list[str]) -> tuple[int, str]:
        cmd = [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", *args]
        LOG.debug("Running %s", " ".join(cmd))
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RemuxTimeout(f"ffmpeg exceeded {self.timeout:.0f}s") from None
        return proc.returncode or 0, stderr_raw.decode("utf-8", errors="replace").strip()

    async def run(self, args: list[str], output: Path) -> RemuxResult:
        try:
            rc, stderr = await self._run(args)
        except FileNotFoundError:
            return RemuxResult(False, 127, error=f"{self.ffmpeg_path} not found")
        except RemuxTimeout as exc:
            LOG.warning("%s", exc)
            return RemuxResult(False, None, error=str(exc))
        if rc != 0:
            LOG.warning("ffmpeg failed (rc=%s) for %s: %s", rc, output.name, stderr[-400:])
            return RemuxResult(False, rc, error=stderr[-400:] or f"ffmpeg exited {rc}")
        return RemuxResult(True, rc, output=output)

    async def fix_duration(self, path: Path) -> RemuxResult:
        """Regenerate timestamps via a ``.fixing`` sibling, then swap it in."""
        tmp_path = path.with_name(f"{path.stem}.fixing{path.suffix}")
        result = await self.run(
            ["-y", "-i", str(path), "-c", "copy", "-fflags", "+genpts", str(tmp_path)],
            tmp_path,
        )
        if not result.ok or not tmp_path.exists() or tmp_path.stat().st_size == 0:
            tmp_path.unlink(missing_ok=True)
            if result.ok:
                return RemuxResult(False, result.returncode, error="empty remux output")
            return result
        os.replace(tmp_path, path)
        return RemuxResult(True, result.returncode, output=path)

    async def concat(self, inputs: Iterable[Path], output: Path) -> RemuxResult:
        inputs = list(inputs)
        list_path = output.with_name(f"{output.stem}.concat.txt")
        list_path.write_text("".join(_concat_line(p) for p in inputs), encoding="utf-8")
        try:
            result = await self.run(
                [
                    "-y",
                    "-f", "concat",
                    "-safe", "0",
                    "-i", str(list_path),
                    "-c", "copy",
                    "-fflags", "+genpts",
                    str(output),
                ],
                output,
            )
        finally:
            list_path.unlink(missing_ok=True)
        if not result.ok:
            output.unlink(missing_ok=True)
        return result

    async def repair(self, source: Path, output: Optional[Path] = None) -> RemuxResult:
        output = output or repaired_path(source)
        output.parent.mkdir(parents=True, exist_ok=True)
        result = await self.run(
            [
                "-y",
                "-fflags", "+genpts+igndts",
                "-err_detect", "ignore_err",
                "-i", str(source),
                "-c", "copy",
                "-avoid_negative_ts", "make_zero",
                str(output),
            ],
            output,
        )
        if not result.ok:
            output.unlink(missing_ok=True)
        return result


async def repair_segment(
    runner: RemuxRunner,
    source: Path,
    output: Path,
    *,
    scan_bytes: int = 4 * 1024 * 1024,
) -> dict:
    """Remux ``source`` into ``output``; fall back to trimming junk before the EBML header.

    The source file is never modified.
    """
    entry: dict = {"fileName": source.name}
    remux = await runner.repair(source, output)
    if remux.ok:
        entry.update(success=True, method="remux", output=str(output))
        return entry
    try:
        offset = await asyncio.to_thread(find_magic_offset, source, scan_bytes)
    except OSError as exc:
        entry.update(success=False, error=str(exc))
        return entry
    if offset:
        written = await asyncio.to_thread(write_trimmed_copy, source, output, offset)
        entry.update(success=True, method="trim", offset=offset, output=str(output), size=written)
        return entry
    entry.update(success=False, error=remux.error or "repair-failed", headerOffset=offset)
    return entry
