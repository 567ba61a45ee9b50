from __future__ import annotations

from pathlib import Path

import pytest

from screenrec import config
from screenrec.ledger import RuntimeStore


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config, "_search_paths", [], raising=False)
    monkeypatch.setattr(config, "_active_config_path", None, raising=False)
    yield
    monkeypatch.setattr(config, "_cfg_cache", None, raising=False)


@pytest.fixture
def make_store(tmp_path: Path):
    def _make(**transfer) -> RuntimeStore:
        cfg = config.default_cfg()
        cfg["paths"]["recordings_dir"] = str(tmp_path / "recordings")
        cfg["paths"]["ledger_path"] = str(tmp_path / "uploaded.json")
        cfg["transfer"].update(transfer)
        cfg["health"].update(warmup_ms=0, probe_interval_ms=0, tick_interval_ms=60000)
        return RuntimeStore.from_cfg(cfg)

    return _make
