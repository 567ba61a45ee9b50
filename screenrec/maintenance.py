#!/usr/bin/env python3
"""Ask a receiver to merge or repair one agent's recordings for a day."""
from __future__ import annotations

import argparse
import json
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlsplit, urlunsplit
from urllib.request import Request, urlopen

from screenrec.config import get_cfg, section

ACTIONS = {
    "merge": ("/merge-all", {"delete": "true"}),
    "repair": ("/repair-all", {"onlyInvalid": "false"}),
}


class MaintenanceError(RuntimeError):
    def __init__(self, message: str, status: int | None = None, details: Any = None):
        super().__init__(message)
        self.status = status
        self.details = details


def receiver_base(upload_url: str) -> str:
    """Strip a trailing ``/upload`` and any query from the configured upload URL."""
    parts = urlsplit(upload_url.strip())
    if parts.scheme not in ("http", "https"):
        raise MaintenanceError(f"invalid receiver url: {upload_url!r}")
    path = parts.path
    if path.lower().rstrip("/").endswith("/upload"):
        path = path.rstrip("/")[: -len("/upload")]
    return urlunsplit((parts.scheme, parts.netloc, path.rstrip("/"), "", ""))


def build_url(upload_url: str, action: str, agent: str, date: str) -> str:
    if action not in ACTIONS:
        raise MaintenanceError(f"invalid action: {action!r}")
    endpoint, extra = ACTIONS[action]
    query = urlencode({"agent": agent, "date": date, **extra})
    return f"{receiver_base(upload_url)}{endpoint}?{query}"


def _decode(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"message": text}


def run_action(
    upload_url: str,
    action: str,
    agent: str,
    date: str,
    *,
    token: str = "",
    timeout: float = 900.0,
    opener: Callable[..., Any] = urlopen,
) -> dict[str, Any]:
    if not agent:
        raise MaintenanceError("missing agent")
    if not date:
        raise MaintenanceError("missing date")
    url = build_url(upload_url, action, agent, date)
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        with opener(Request(url, headers=headers, method="GET"), timeout=timeout) as response:
            data = _decode(response.read())
            status = response.status
    except HTTPError as exc:
        raise MaintenanceError("upstream error", status=exc.code, details=_decode(exc.read())) from None
    except URLError as exc:
        raise MaintenanceError(f"receiver unreachable: {exc.reason}") from None
    return {"success": status == 200, "action": action, "target": url, "status": status, "result": data}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Trigger merge or repair on a recording receiver")
    parser.add_argument("action", choices=sorted(ACTIONS))
    parser.add_argument("--agent", required=True, help="Agent name as sent in X-Agent-Name")
    parser.add_argument("--date", required=True, help="Recording date (YYYY-MM-DD)")
    parser.add_argument("--url", help="Receiver URL (defaults to transfer.receiver_url)")
    parser.add_argument("--token", help="Bearer token (defaults to transfer.token)")
    args = parser.parse_args(argv)

    transfer = section(get_cfg(), "transfer")
    url = args.url or str(transfer.get("receiver_url") or "")
    token = args.token if args.token is not None else str(transfer.get("token") or "")
    if not url:
        print("[maintenance] no receiver url configured", flush=True)
        return 2
    try:
        outcome = run_action(url, args.action, args.agent, args.date, token=token)
    except MaintenanceError as exc:
        print(f"[maintenance] {args.action} failed: {exc} (status={exc.status})", flush=True)
        if exc.details is not None:
            print(json.dumps(exc.details, indent=2), flush=True)
        return 1
    print(f"[maintenance] {args.action} -> {outcome['target']} ({outcome['status']})", flush=True)
    print(json.dumps(outcome["result"], indent=2), flush=True)
    return 0 if outcome["success"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
