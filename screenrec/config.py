#!/usr/bin/env python3
"""
Unified configuration loader for screenrec.

Load order (first found wins):
  1) SCREENREC_CONFIG (env, absolute or relative to CWD)
  2) /etc/screenrec/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.

The loaded mapping is cached for CLI entry points only. Library components
never read the cache themselves; they receive their settings through a
``RuntimeStore`` or explicit constructor arguments.
"""
from __future__ import annotations

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "recordings_dir": "~/.local/share/screenrec/recordings",
        "ledger_path": "~/.local/share/screenrec/uploaded.json",
    },
    "capture": {
        "timeslice_ms": 1000,
        "container_ext": ".webm",
        "requested_profile": {"width": 1920, "height": 1080, "fps": 30},
        "encoder": {
            "codec": "libvpx-vp9",
            "bitrate": "1M",
            "deadline": "realtime",
        },
        "slot_wait_ms": 15000,
        "flush_timeout_ms": 10000,
    },
    "health": {
        "warmup_ms": 350,
        "probe_samples": 10,
        "probe_interval_ms": 120,
        "probe_black_ratio": 0.8,
        "black_channel_threshold": 24,
        "black_min_content_ratio": 0.01,
        "tick_interval_ms": 1000,
        "heavy_check_every": 2,
        "muted_timeout_ms": 8000,
        "runtime_black_streak": 10,
        "stale_frame_checks": 90,
        "draw_failure_streak": 12,
        "frame_callback_timeout_ms": 20000,
        "failure_cooldown_ms": 4000,
    },
    "transfer": {
        "receiver_url": "",
        "token": "",
        "agent_name": "",
        "timeout_sec": 120.0,
        "stale_file_hours": 24.0,
    },
    "receiver": {
        "listen_host": "0.0.0.0",
        "listen_port": 5055,
        "base_dir": "~/Recordings",
        "token": "",
        "ffmpeg_path": "",
        "remux_timeout_sec": 600.0,
        "repair_scan_bytes": 4 * 1024 * 1024,
        "max_upload_bytes": 8 * 1024 * 1024 * 1024,
        "allowed_ext": [".webm"],
    },
    "retry": {
        "base_delay_ms": 5000,
        "max_delay_ms": 60000,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring unreadable config {path}: {exc}", flush=True)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("SCREENREC_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/screenrec/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Paths
    if "REC_DIR" in os.environ:
        cfg.setdefault("paths", {})["recordings_dir"] = os.environ["REC_DIR"]
    if "LEDGER_PATH" in os.environ:
        cfg.setdefault("paths", {})["ledger_path"] = os.environ["LEDGER_PATH"]

    env_map = {
        # Names kept from the original receiver deployment scripts.
        "RECORDING_RECEIVER_PORT": ("receiver", "listen_port", int),
        "RECORDING_RECEIVER_PATH": ("receiver", "base_dir", str),
        "RECORDING_RECEIVER_TOKEN": ("receiver", "token", str),
        "RECEIVER_REMUX_TIMEOUT_SEC": ("receiver", "remux_timeout_sec", float),
        "FFMPEG_PATH": ("receiver", "ffmpeg_path", str),
        "RECEIVER_URL": ("transfer", "receiver_url", str),
        "RECEIVER_TOKEN": ("transfer", "token", str),
        "AGENT_NAME": ("transfer", "agent_name", str),
        "CAPTURE_TIMESLICE_MS": ("capture", "timeslice_ms", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                print(
                    f"[config] WARNING: ignoring invalid {env_key}={os.environ[env_key]!r}",
                    flush=True,
                )


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (screenrec/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def default_cfg() -> Dict[str, Any]:
    """Return a private copy of the built-in defaults (no files, no env)."""

    return copy.deepcopy(_DEFAULTS)


def active_config_path() -> Path | None:
    global _active_config_path
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    global _search_paths
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return ``cfg[name]`` merged over the defaults for that section."""

    defaults = copy.deepcopy(_DEFAULTS.get(name, {}))
    value = cfg.get(name) if isinstance(cfg, dict) else None
    if isinstance(value, dict):
        return _deep_merge(defaults, value)
    return defaults


def expand_path(value: Any) -> Path:
    return Path(str(value)).expanduser()
