from __future__ import annotations

import json

import pytest

from screenrec import config
from screenrec.ledger import RuntimeStore, UploadedLedger, load_uploaded_names


def test_ledger_persists_and_reloads(tmp_path):
    path = tmp_path / "state" / "uploaded.json"
    ledger = UploadedLedger(path)
    assert ledger.add("recording-screen1-1.webm") is True
    assert ledger.add("recording-screen1-1.webm") is False
    assert ledger.add(" recording-screen2-1.webm ") is True

    assert json.loads(path.read_text()) == ["recording-screen1-1.webm", "recording-screen2-1.webm"]
    assert not (path.parent / "uploaded.json.tmp").exists()

    reloaded = UploadedLedger(path)
    assert "recording-screen2-1.webm" in reloaded
    assert len(reloaded) == 2


def test_ledger_rejects_empty_names(tmp_path):
    with pytest.raises(ValueError):
        UploadedLedger(tmp_path / "u.json").add("   ")


def test_unreadable_ledger_starts_empty(tmp_path):
    path = tmp_path / "uploaded.json"
    path.write_text("{not json")
    assert load_uploaded_names(path) == []
    path.write_text(json.dumps({"a": 1}))
    assert load_uploaded_names(path) == []
    path.write_text(json.dumps(["a", "", 3, "a", "b"]))
    assert load_uploaded_names(path) == ["a", "b"]


def test_runtime_store_from_cfg(tmp_path):
    cfg = config.default_cfg()
    cfg["paths"]["recordings_dir"] = str(tmp_path / "rec")
    cfg["paths"]["ledger_path"] = str(tmp_path / "uploaded.json")
    cfg["transfer"].update(token=" tok ", agent_name="Jane Doe")

    store = RuntimeStore.from_cfg(cfg)

    assert store.receiver_token == "tok"
    assert store.agent_name == "Jane Doe"
    assert store.recordings_dir == tmp_path / "rec"
    assert store.settings("health")["stale_frame_checks"] == 90


def test_stores_do_not_share_state(tmp_path):
    a = RuntimeStore.from_cfg({"paths": {"ledger_path": str(tmp_path / "a.json")}})
    b = RuntimeStore.from_cfg({"paths": {"ledger_path": str(tmp_path / "b.json")}})
    a.ledger.add("x.webm")
    assert "x.webm" not in b.ledger
