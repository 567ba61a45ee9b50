from __future__ import annotations

import io
import json
from urllib.error import HTTPError
from urllib.parse import parse_qs, urlsplit

import pytest

from screenrec import maintenance


class _Response:
    def __init__(self, payload, status=200):
        self._raw = json.dumps(payload).encode("utf-8")
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return self._raw


def test_receiver_base_strips_upload_suffix():
    assert maintenance.receiver_base("https://rec.example.com/upload/?x=1") == "https://rec.example.com"
    assert maintenance.receiver_base("http://10.0.0.5:5055/") == "http://10.0.0.5:5055"
    with pytest.raises(maintenance.MaintenanceError):
        maintenance.receiver_base("ftp://rec.example.com")


def test_merge_uses_merge_all_with_delete():
    url = maintenance.build_url("http://rec:5055/upload", "merge", "Jane Doe", "2024-01-15")
    parts = urlsplit(url)
    assert parts.path == "/merge-all"
    assert parse_qs(parts.query) == {"agent": ["Jane Doe"], "date": ["2024-01-15"], "delete": ["true"]}


def test_repair_forces_all_segments():
    url = maintenance.build_url("http://rec:5055", "repair", "a", "2024-01-15")
    assert parse_qs(urlsplit(url).query)["onlyInvalid"] == ["false"]
    with pytest.raises(maintenance.MaintenanceError):
        maintenance.build_url("http://rec:5055", "purge", "a", "2024-01-15")


def test_run_action_sends_token_and_reports_partial_success():
    seen = []

    def opener(request, timeout=None):
        seen.append(request)
        return _Response({"success": False, "screenCount": 2}, status=207)

    outcome = maintenance.run_action("http://rec:5055", "merge", "a", "2024-01-15", token="tok", opener=opener)

    assert seen[0].get_header("Authorization") == "Bearer tok"
    assert outcome["status"] == 207
    assert outcome["success"] is False
    assert outcome["result"]["screenCount"] == 2


def test_run_action_raises_on_upstream_error():
    body = io.BytesIO(json.dumps({"error": "no-segments-found"}).encode())

    def opener(request, timeout=None):
        raise HTTPError(request.full_url, 404, "Not Found", {}, body)

    with pytest.raises(maintenance.MaintenanceError) as excinfo:
        maintenance.run_action("http://rec:5055", "repair", "a", "2024-01-15", opener=opener)

    assert excinfo.value.status == 404
    assert excinfo.value.details == {"error": "no-segments-found"}


def test_main_prints_result(monkeypatch, capsys):
    monkeypatch.setattr(
        maintenance,
        "run_action",
        lambda url, action, agent, date, token="": {
            "success": True,
            "action": action,
            "target": f"{url}/merge-all",
            "status": 200,
            "result": {"success": True},
        },
    )
    rc = maintenance.main(["merge", "--agent", "a", "--date", "2024-01-15", "--url", "http://rec:5055"])
    out = capsys.readouterr().out
    assert rc == 0
    assert "[maintenance] merge -> http://rec:5055/merge-all (200)" in out
