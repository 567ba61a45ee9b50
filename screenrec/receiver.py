#!/usr/bin/env python3
"""
Recording ingestion receiver (aiohttp).

Endpoints:
  POST /                 raw upload, verified against X-File-Size / X-File-Hash
  GET  / , /health       liveness plus the ffmpeg binary in use
  GET  /segments         list deduplicated segments for agent/date
  GET  /merge            concatenate one (optionally filtered) group
  GET  /merge-all        concatenate each screen group separately
  GET  /repair-all       remux (or trim) broken segments into repaired/

Uploads land in <base>/<agent>/<YYYY-MM-DD>/<file>. After a successful write a
background ffmpeg pass regenerates timestamps unless X-Ffmpeg-Repair: false.
Merge, repair and the background duration fix hold a per-folder lock, and
list segments only once they hold it, so concurrent requests serialize.
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import hashlib
import hmac
import logging
import os
import re
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Optional

from aiohttp import web
from aiohttp.web import AppKey

from screenrec.config import expand_path, reload_cfg, section
from screenrec.remux import RemuxRunner, repair_segment, repaired_path
from screenrec.segments import (
    SegmentFile,
    compile_pattern,
    find_segments,
    group_by_screen,
    is_valid_header,
    normalize_iso_date,
    sanitize_segment,
)


class FolderLocks:
    """One asyncio.Lock per segment folder, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, folder: Path):
        key = str(folder)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


BASE_DIR_KEY: AppKey[Path] = web.AppKey("base_dir", Path)
TOKEN_KEY: AppKey[str] = web.AppKey("token", str)
REMUX_KEY: AppKey[RemuxRunner] = web.AppKey("remux", RemuxRunner)
ALLOWED_EXT_KEY: AppKey[tuple[str, ...]] = web.AppKey("allowed_ext", tuple)
SCAN_BYTES_KEY: AppKey[int] = web.AppKey("repair_scan_bytes", int)
FOLDER_LOCKS_KEY: AppKey[FolderLocks] = web.AppKey("folder_locks", FolderLocks)
BACKGROUND_TASKS_KEY: AppKey[set[asyncio.Task]] = web.AppKey("background_tasks", set)
SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)

LOG = logging.getLogger("receiver")


class _RequestError(Exception):
    def __init__(self, status: int, error: str, **extra: Any):
        super().__init__(error)
        self.status = status
        self.payload = {"success": False, "error": error, **extra}

    def response(self) -> web.Response:
        return web.json_response(self.payload, status=self.status)


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _write_atomic(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f".{target.name}.upload")
    with tmp_path.open("wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, target)


def _token_matches(header: str, token: str) -> bool:
    return hmac.compare_digest(header.encode("utf-8"), f"Bearer {token}".encode("utf-8"))


def build_app(cfg: Optional[dict[str, Any]] = None) -> web.Application:
    settings = section(cfg or {}, "receiver")

    @web.middleware
    async def _json_errors(request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPNotFound:
            return web.json_response({"error": "not-found"}, status=404)
        except web.HTTPMethodNotAllowed:
            return web.json_response({"error": "method-not-allowed"}, status=405)

    app = web.Application(
        middlewares=[_json_errors],
        client_max_size=int(settings["max_upload_bytes"]),
    )
    app[BASE_DIR_KEY] = expand_path(settings["base_dir"])
    app[TOKEN_KEY] = str(settings.get("token") or "").strip()
    app[REMUX_KEY] = RemuxRunner(
        str(settings.get("ffmpeg_path") or ""),
        timeout=float(settings["remux_timeout_sec"]),
    )
    app[ALLOWED_EXT_KEY] = tuple(str(ext).lower() for ext in settings.get("allowed_ext") or [".webm"])
    app[SCAN_BYTES_KEY] = int(settings["repair_scan_bytes"])
    app[FOLDER_LOCKS_KEY] = FolderLocks()
    app[BACKGROUND_TASKS_KEY] = set()
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()

    async def _drain_background(app: web.Application) -> None:
        tasks = list(app[BACKGROUND_TASKS_KEY])
        if tasks:
            LOG.info("Waiting for %d background remux task(s)", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    app.on_cleanup.append(_drain_background)

    def _spawn(coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        tasks = app[BACKGROUND_TASKS_KEY]
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    # --- query helpers ---
    def _group_folder(request: web.Request) -> tuple[str, str, Path]:
        agent_raw = request.query.get("agent", "").strip()
        if not agent_raw:
            raise _RequestError(400, "missing-agent-param")
        agent = sanitize_segment(agent_raw, "agent")
        iso_date = sanitize_segment(normalize_iso_date(request.query.get("date")), "unknown-date")
        return agent, iso_date, app[BASE_DIR_KEY] / agent / iso_date

    def _query(
        request: web.Request, *, use_pattern: bool = True
    ) -> tuple[str, str, Path, Optional[re.Pattern[str]]]:
        agent, iso_date, folder = _group_folder(request)
        try:
            pattern = compile_pattern(request.query.get("pattern")) if use_pattern else None
        except ValueError:
            raise _RequestError(400, "invalid-pattern") from None
        return agent, iso_date, folder, pattern

    def _scan(
        agent: str, iso_date: str, folder: Path, pattern: Optional[re.Pattern[str]]
    ) -> tuple[list[SegmentFile], list[str]]:
        segments, skipped = find_segments(
            folder,
            agent=agent,
            iso_date=iso_date,
            pattern=pattern,
            allowed_ext=app[ALLOWED_EXT_KEY],
        )
        if not segments:
            raise _RequestError(404, "no-segments-found", folder=str(folder))
        return segments, skipped

    # --- merge core ---
    async def _merge_group(
        folder: Path,
        segments: list[SegmentFile],
        output: Path,
        *,
        delete: bool,
        cleanup_invalid: bool,
    ) -> dict[str, Any]:
        valid = [seg for seg in segments if is_valid_header(seg.path)]
        invalid = [seg for seg in segments if seg not in valid]
        result: dict[str, Any] = {
            "outputName": output.name,
            "segmentNames": [seg.file_name for seg in valid],
            "invalidSegments": [seg.file_name for seg in invalid],
            "segmentCount": len(valid),
            "deletedSegments": 0,
            "deletedInvalid": 0,
        }
        for seg in invalid:
            LOG.warning("Excluding %s from merge: missing EBML header", seg.file_name)

        if not valid:
            result.update(success=False, error="no-valid-segments")
        elif len(valid) == 1:
            await asyncio.to_thread(shutil.copyfile, valid[0].path, output)
            result.update(success=True, output=str(output), method="copy")
        else:
            remux = await app[REMUX_KEY].concat([seg.path for seg in valid], output)
            result.update(success=remux.ok, output=str(output) if remux.ok else None, method="concat")
            if not remux.ok:
                result["error"] = remux.error or "merge-failed"

        if result["success"] and delete:
            for seg in valid:
                try:
                    seg.path.unlink()
                    result["deletedSegments"] += 1
                except FileNotFoundError:
                    continue
            LOG.info("Deleted %d segment(s) after merge into %s", result["deletedSegments"], output.name)
        if cleanup_invalid:
            for seg in invalid:
                try:
                    seg.path.unlink()
                    result["deletedInvalid"] += 1
                except FileNotFoundError:
                    continue
        return result

    # --- handlers ---
    async def health(request: web.Request) -> web.Response:
        return web.json_response(
            {"ok": True, "message": "Recording receiver running.", "ffmpeg": app[REMUX_KEY].ffmpeg_path}
        )

    async def ingest(request: web.Request) -> web.Response:
        token = app[TOKEN_KEY]
        if token and not _token_matches(request.headers.get("Authorization", ""), token):
            return web.json_response({"error": "unauthorized"}, status=401)

        headers = request.headers
        agent = sanitize_segment(headers.get("X-Agent-Name"), "agent")
        iso_date = sanitize_segment(normalize_iso_date(headers.get("X-Iso-Date")), "unknown-date")
        file_name = sanitize_segment(headers.get("X-File-Name"), f"recording-{_now_ms()}.webm")
        target = app[BASE_DIR_KEY] / agent / iso_date / file_name

        body = await request.read()
        expected_hash = (headers.get("X-File-Hash") or "").strip().lower()
        if expected_hash:
            actual_hash = hashlib.md5(body).hexdigest()
            if actual_hash != expected_hash:
                LOG.error("Hash mismatch for %s: expected %s, got %s", file_name, expected_hash, actual_hash)
                return web.json_response(
                    {"success": False, "error": "hash-mismatch", "expectedHash": expected_hash, "actualHash": actual_hash},
                    status=400,
                )
        size_header = (headers.get("X-File-Size") or "").strip()
        if size_header.isdigit() and int(size_header) != len(body):
            LOG.error("Size mismatch for %s: expected %s, got %d", file_name, size_header, len(body))
            return web.json_response(
                {"success": False, "error": "size-mismatch", "expectedSize": int(size_header), "receivedSize": len(body)},
                status=400,
            )

        try:
            await asyncio.to_thread(_write_atomic, target, body)
        except OSError as exc:
            LOG.error("Unable to store %s: %s", target, exc)
            return web.json_response({"success": False, "error": str(exc)}, status=500)
        LOG.info("Saved %s (%d bytes) to %s", file_name, len(body), target)

        if _flag(headers.get("X-Ffmpeg-Repair"), default=True):
            _spawn(_fix_duration(target))

        return web.json_response(
            {"success": True, "path": str(target), "size": len(body), "verified": bool(expected_hash)}
        )

    async def _fix_duration(target: Path) -> None:
        async with app[FOLDER_LOCKS_KEY].hold(target.parent):
            if not target.exists():
                LOG.info("Skipping duration fix for %s: file is gone", target.name)
                return
            result = await app[REMUX_KEY].fix_duration(target)
        if result.ok:
            LOG.info("Duration fixed for %s", target.name)
        else:
            LOG.warning("Duration fix failed for %s: %s", target.name, result.error)

    async def list_segments(request: web.Request) -> web.Response:
        try:
            agent, iso_date, folder, pattern = _query(request)
            segments, skipped = _scan(agent, iso_date, folder, pattern)
        except _RequestError as exc:
            return exc.response()
        return web.json_response(
            {
                "success": True,
                "folder": str(folder),
                "count": len(segments),
                "segments": [seg.to_payload() for seg in segments],
                "skippedDuplicates": skipped,
            }
        )

    async def merge(request: web.Request) -> web.Response:
        try:
            agent, iso_date, folder, pattern = _query(request)
            async with app[FOLDER_LOCKS_KEY].hold(folder):
                segments, _ = _scan(agent, iso_date, folder, pattern)
                output = folder / f"merged-{agent}-{iso_date}-{_now_ms()}.webm"
                result = await _merge_group(
                    folder,
                    segments,
                    output,
                    delete=_flag(request.query.get("delete")),
                    cleanup_invalid=_flag(request.query.get("cleanupInvalid")),
                )
        except _RequestError as exc:
            return exc.response()
        return web.json_response(result, status=200 if result["success"] else 500)

    async def merge_all(request: web.Request) -> web.Response:
        delete = _flag(request.query.get("delete"))
        cleanup_invalid = _flag(request.query.get("cleanupInvalid"))
        results = []
        try:
            agent, iso_date, folder, _ = _query(request, use_pattern=False)
            async with app[FOLDER_LOCKS_KEY].hold(folder):
                segments, _ = _scan(agent, iso_date, folder, None)
                groups = group_by_screen(segments)
                LOG.info("Found %d screen group(s) in %s: %s", len(groups), folder, ", ".join(groups))
                for screen_id, group in groups.items():
                    output = folder / f"merged-{agent}-{screen_id}-{iso_date}-{_now_ms()}.webm"
                    result = await _merge_group(
                        folder, group, output, delete=delete, cleanup_invalid=cleanup_invalid
                    )
                    results.append({"screenId": screen_id, **result})
        except _RequestError as exc:
            return exc.response()
        all_ok = all(r["success"] for r in results)
        return web.json_response(
            {
                "success": all_ok,
                "screenCount": len(groups),
                "results": results,
                "deletedSegments": sum(r["deletedSegments"] for r in results),
            },
            status=200 if all_ok else 207,
        )

    async def _repair_one(segment: SegmentFile) -> dict[str, Any]:
        return await repair_segment(
            app[REMUX_KEY], segment.path, repaired_path(segment.path), scan_bytes=app[SCAN_BYTES_KEY]
        )

    async def repair_all(request: web.Request) -> web.Response:
        only_invalid = _flag(request.query.get("onlyInvalid"), default=True)
        results = []
        try:
            agent, iso_date, folder, pattern = _query(request)
            async with app[FOLDER_LOCKS_KEY].hold(folder):
                segments, _ = _scan(agent, iso_date, folder, pattern)
                candidates = [seg for seg in segments if not only_invalid or not is_valid_header(seg.path)]
                for segment in candidates:
                    entry = await _repair_one(segment)
                    if not entry["success"]:
                        LOG.warning("Repair failed for %s: %s", segment.file_name, entry.get("error"))
                    results.append(entry)
        except _RequestError as exc:
            return exc.response()
        repaired = sum(1 for r in results if r["success"])
        return web.json_response(
            {
                "success": repaired == len(results),
                "folder": str(folder),
                "candidates": len(candidates),
                "repaired": repaired,
                "failed": len(results) - repaired,
                "results": results,
            }
        )

    app.router.add_post("/", ingest)
    app.router.add_get("/", health)
    app.router.add_get("/health", health)
    app.router.add_get("/segments", list_segments)
    app.router.add_get("/merge", merge)
    app.router.add_get("/merge-all", merge_all)
    app.router.add_get("/repair-all", repair_all)
    return app


class ReceiverHandle:
    """Handle returned by start_receiver_in_thread(). Call stop() to shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def stop(self, timeout: float = 5.0) -> None:
        LOG.info("Stopping receiver ...")
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.app[SHUTDOWN_EVENT_KEY].set)
            fut = asyncio.run_coroutine_threadsafe(self.runner.cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except (asyncio.TimeoutError, RuntimeError, OSError) as exc:
                LOG.warning("Error awaiting cleanup: %r", exc)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        LOG.info("receiver stopped")


def start_receiver_in_thread(
    cfg: Optional[dict[str, Any]] = None,
    host: str = "0.0.0.0",
    port: int = 5055,
    *,
    access_log: bool = False,
) -> ReceiverHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    loop = asyncio.new_event_loop()
    ready = threading.Event()
    box: dict[str, Any] = {}

    def _run() -> None:
        asyncio.set_event_loop(loop)
        try:
            app = build_app(cfg)
            runner = web.AppRunner(app, access_log=LOG if access_log else None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except OSError as exc:
            box["error"] = exc
            ready.set()
            return
        box["runner"], box["app"] = runner, app
        LOG.info("receiver listening on %s:%s (base %s)", host, port, app[BASE_DIR_KEY])
        ready.set()
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(runner.cleanup())
            loop.close()

    thread = threading.Thread(target=_run, name="receiver", daemon=True)
    thread.start()
    ready.wait()
    if "error" in box:
        raise box["error"]
    return ReceiverHandle(thread, loop, box["runner"], box["app"])


def cli_main() -> int:
    parser = argparse.ArgumentParser(description="Recording ingestion receiver.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = reload_cfg()
    level = "DEBUG" if section(cfg, "logging").get("dev_mode") else args.log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    settings = section(cfg, "receiver")
    bind_host = args.host or str(settings["listen_host"])
    bind_port = args.port or int(settings["listen_port"])
    if not settings.get("token"):
        LOG.warning("No receiver token configured; uploads are not authenticated")

    try:
        handle = start_receiver_in_thread(cfg, bind_host, bind_port, access_log=args.access_log)
    except OSError as exc:
        LOG.error("Unable to start receiver: %s", exc)
        return 1
    try:
        while handle.thread.is_alive():
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
