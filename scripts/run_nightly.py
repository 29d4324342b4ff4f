#!/usr/bin/env python3
"""Ask the running Nibble server for one pass over the registered repositories.

The server process is the only writer of the installation registry, so this
command never opens the registry file itself. It calls the trigger and debug
endpoints with the API key instead. ``--refresh`` and ``--dedupe`` need the
server to run with ``ENABLE_DEBUG_ENDPOINTS=true``.
"""
from __future__ import annotations

import argparse
import json
import os
from typing import Any, Dict, List, Optional, Tuple

import httpx


DEFAULT_BASE_URL = "http://127.0.0.1:8000"


def _split_repo(value: str) -> Tuple[str, str]:
    owner, _, name = value.strip().partition("/")
    if not owner or not name or "/" in name:
        raise argparse.ArgumentTypeError(f"expected owner/name, got {value!r}")
    return owner, name


def _call(client: httpx.Client, path: str) -> Dict[str, Any]:
    response = client.post(path)
    try:
        payload = response.json()
    except ValueError:
        payload = {"ok": False, "error": {"code": "invalid_response", "message": response.text[:200]}}
    if not isinstance(payload, dict):
        payload = {"ok": False, "error": {"code": "invalid_response", "message": str(payload)[:200]}}
    payload["status_code"] = response.status_code
    return payload


def run(
    base_url: str,
    api_key: str,
    *,
    repo: Optional[Tuple[str, str]] = None,
    refresh: bool = False,
    dedupe: bool = False,
    timeout_s: float = 300.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> Dict[str, Any]:
    steps: List[Tuple[str, str]] = []
    if refresh:
        steps.append(("refresh", "/debug/refresh-installations"))
    if dedupe:
        steps.append(("dedupe", "/debug/deduplicate"))
    if repo is not None:
        steps.append(("outcome", f"/trigger/{repo[0]}/{repo[1]}"))
    else:
        steps.append(("batch", "/trigger/nightly"))

    result: Dict[str, Any] = {"ok": True}
    with httpx.Client(
        base_url=base_url.rstrip("/"),
        headers={"x-api-key": api_key, "user-agent": "nibble-run-nightly"},
        timeout=timeout_s,
        transport=transport,
    ) as client:
        for key, path in steps:
            payload = _call(client, path)
            if not payload.get("ok"):
                result["ok"] = False
                result["error"] = {"step": key, **payload.get("error", {}), "status_code": payload["status_code"]}
                return result
            result[key] = payload.get("data")
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Trigger one Nibble pass on the running server.")
    parser.add_argument("--repo", type=_split_repo, default=None, help="Only process owner/name.")
    parser.add_argument("--refresh", action="store_true", help="Rebuild the installation registry from GitHub first.")
    parser.add_argument("--dedupe", action="store_true", help="Drop duplicate repository bindings before running.")
    parser.add_argument("--url", default=os.getenv("NIBBLE_URL", DEFAULT_BASE_URL), help="Base URL of the server.")
    args = parser.parse_args()

    api_key = os.getenv("NIBBLE_API_SECRET", "").strip()
    if not api_key:
        print(json.dumps({"ok": False, "error": {"code": "missing_api_key", "message": "Set NIBBLE_API_SECRET."}}, indent=2))
        return 1

    try:
        result = run(args.url, api_key, repo=args.repo, refresh=args.refresh, dedupe=args.dedupe)
    except httpx.HTTPError as exc:
        print(json.dumps({"ok": False, "error": {"code": "server_unreachable", "message": str(exc)}}, indent=2))
        return 1
    print(json.dumps(result, indent=2))
    if not result["ok"]:
        return 1
    outcome = result.get("outcome") or {}
    return 1 if outcome.get("outcome", {}).get("status") == "failed" else 0


if __name__ == "__main__":
    raise SystemExit(main())
