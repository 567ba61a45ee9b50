#!/usr/bin/env python3
"""
Offline WebM repair for a folder of recordings.

Remuxes every matching file into an output folder (default <input>/repaired)
as <stem>.fixed<ext>, falling back to trimming leading junk before the EBML
header. Originals are never touched; existing outputs are skipped unless
--overwrite is given.
"""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from screenrec.config import get_cfg, section
from screenrec.remux import RemuxRunner, repair_segment, repaired_path


def list_inputs(folder: Path, suffix: str) -> list[Path]:
    suffix = suffix.lower()
    return sorted(
        entry for entry in folder.iterdir() if entry.is_file() and entry.name.lower().endswith(suffix)
    )


async def repair_folder(
    runner: RemuxRunner,
    input_dir: Path,
    output_dir: Path,
    *,
    suffix: str = ".webm",
    overwrite: bool = False,
    dry_run: bool = False,
    scan_bytes: int = 4 * 1024 * 1024,
) -> dict[str, Any]:
    summary: dict[str, Any] = {"repaired": 0, "failed": 0, "skipped": 0, "results": []}
    for source in list_inputs(input_dir, suffix):
        output = output_dir / repaired_path(source).name
        if not overwrite and output.exists():
            print(f"[repair] skip {source.name}: output exists", flush=True)
            summary["skipped"] += 1
            continue
        if dry_run:
            print(f"[repair] dry-run {source.name} -> {output.name}", flush=True)
            summary["skipped"] += 1
            continue
        entry = await repair_segment(runner, source, output, scan_bytes=scan_bytes)
        summary["results"].append(entry)
        if entry["success"]:
            summary["repaired"] += 1
            print(f"[repair] ok {source.name} -> {output.name} ({entry['method']})", flush=True)
        else:
            summary["failed"] += 1
            print(f"[repair] fail {source.name}: {entry.get('error')}", flush=True)
    return summary


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Repair WebM recordings in a folder by remuxing them with ffmpeg")
    parser.add_argument("--input", required=True, help="Folder holding the recordings")
    parser.add_argument("--output", help="Destination folder (default: <input>/repaired)")
    parser.add_argument("--pattern", default=".webm", help="File name suffix to match (default: .webm)")
    parser.add_argument("--overwrite", action="store_true", help="Replace existing repaired files")
    parser.add_argument("--dry-run", action="store_true", help="Only print what would be repaired")
    parser.add_argument("--ffmpeg", help="ffmpeg binary (default: receiver.ffmpeg_path or PATH)")
    args = parser.parse_args(argv)

    receiver = section(get_cfg(), "receiver")
    input_dir = Path(args.input).expanduser().resolve()
    if not input_dir.is_dir():
        print(f"[repair] input path is not a directory: {input_dir}", flush=True)
        return 1
    output_dir = Path(args.output).expanduser().resolve() if args.output else input_dir / "repaired"

    runner = RemuxRunner(
        args.ffmpeg or str(receiver.get("ffmpeg_path") or ""),
        timeout=float(receiver["remux_timeout_sec"]),
    )
    if not list_inputs(input_dir, args.pattern):
        print(f"[repair] no files found in {input_dir}", flush=True)
        return 0
    print(f"[repair] ffmpeg: {runner.ffmpeg_path}; output: {output_dir}", flush=True)

    summary = asyncio.run(
        repair_folder(
            runner,
            input_dir,
            output_dir,
            suffix=args.pattern,
            overwrite=args.overwrite,
            dry_run=args.dry_run,
            scan_bytes=int(receiver["repair_scan_bytes"]),
        )
    )
    print(
        f"[repair] done: repaired={summary['repaired']} failed={summary['failed']} skipped={summary['skipped']}",
        flush=True,
    )
    if summary["failed"]:
        print(json.dumps([r for r in summary["results"] if not r["success"]], indent=2), flush=True)
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
