"""Persistent record of recordings already ingested by the receiver."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from screenrec.config import expand_path, section


def _normalize_names(raw: Iterable[Any]) -> list[str]:
    names: list[str] = []
    seen: set[str] = set()
    for item in raw or []:
        if not isinstance(item, str):
            continue
        name = item.strip()
        if not name or name in seen:
            continue
        seen.add(name)
        names.append(name)
    return names


def load_uploaded_names(path: str | os.PathLike[str]) -> list[str]:
    candidate = Path(path)
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return []
    if not isinstance(data, list):
        return []
    return _normalize_names(data)


def store_uploaded_names(path: str | os.PathLike[str], names: Iterable[str]) -> None:
    target = Path(path)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    target.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(list(names), handle)
        handle.write("\n")
    os.replace(tmp_path, target)


class UploadedLedger:
    """Set of file names the receiver has confirmed, backed by a JSON array."""

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._names = load_uploaded_names(self.path)
        self._index = set(self._names)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._index

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._names)

    def add(self, name: str) -> bool:
        """Record ``name``; returns False when it was already present."""
        name = name.strip()
        if not name:
            raise ValueError("ledger entries must be non-empty")
        with self._lock:
            if name in self._index:
                return False
            self._names.append(name)
            self._index.add(name)
            store_uploaded_names(self.path, self._names)
            return True


@dataclass
class RuntimeStore:
    """Settings, credentials and ledger owned by one running process.

    Components take a store instead of reading module-level caches.
    """

    cfg: dict[str, Any]
    ledger: UploadedLedger
    receiver_token: str = ""
    agent_name: str = ""

    @classmethod
    def from_cfg(cls, cfg: dict[str, Any]) -> "RuntimeStore":
        paths = section(cfg, "paths")
        transfer = section(cfg, "transfer")
        ledger = UploadedLedger(expand_path(paths["ledger_path"]))
        return cls(
            cfg=cfg,
            ledger=ledger,
            receiver_token=str(transfer.get("token") or "").strip(),
            agent_name=str(transfer.get("agent_name") or "").strip(),
        )

    def settings(self, name: str) -> dict[str, Any]:
        return section(self.cfg, name)

    @property
    def recordings_dir(self) -> Path:
        return expand_path(self.settings("paths")["recordings_dir"])
