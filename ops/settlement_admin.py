from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any
import urllib.request
import urllib.error


DEFAULT_BASE_URL = os.getenv("VAULT_BASE_URL", "http://localhost:8000")
DEFAULT_ADMIN_KEY = os.getenv("INTERNAL_ADMIN_KEY", "")

DEFAULT_TIMEOUT_SECONDS = 30


def http_call(method: str, url: str, admin_key: str) -> Any:
    req = urllib.request.Request(
        url=url,
        data=b"" if method == "POST" else None,
        method=method,
        headers={"X-Internal-Admin-Key": admin_key},
    )
    try:
        with urllib.request.urlopen(req, timeout=DEFAULT_TIMEOUT_SECONDS) as resp:
            raw = resp.read().decode("utf-8")
            return json.loads(raw) if raw else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        print(f"HTTP {e.code} {e.reason} for {url}", file=sys.stderr)
        if body:
            print(body, file=sys.stderr)
        return {"error": {"status": e.code, "reason": e.reason, "body": body}}
    except urllib.error.URLError as e:
        print(f"Network error for {url}: {e}", file=sys.stderr)
        return {"error": {"reason": str(e)}}


def main() -> int:
    p = argparse.ArgumentParser(description="Settlement operations: replay events, retry payouts, sweep, alerts.")
    p.add_argument("--base-url", default=DEFAULT_BASE_URL)
    p.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY)
    sub = p.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="re-run settlement for a stored webhook event")
    replay.add_argument("event_id")

    retry = sub.add_parser("retry-payout", help="retry a failed seller transfer")
    retry.add_argument("payout_id")

    sub.add_parser("expire-stale", help="release listings held by expired checkouts")

    alerts = sub.add_parser("alerts", help="list settlement alerts")
    alerts.add_argument("--limit", type=int, default=50)

    args = p.parse_args()

    if not args.admin_key:
        print("Missing INTERNAL_ADMIN_KEY (env) or --admin-key", file=sys.stderr)
        return 2

    base_url = args.base_url.rstrip("/") + "/v1/internal"
    if args.command == "replay":
        resp = http_call("POST", f"{base_url}/webhook-events/{args.event_id}/replay", args.admin_key)
    elif args.command == "retry-payout":
        resp = http_call("POST", f"{base_url}/payouts/{args.payout_id}/retry", args.admin_key)
    elif args.command == "expire-stale":
        resp = http_call("POST", f"{base_url}/sales/expire-stale", args.admin_key)
    else:
        resp = http_call("GET", f"{base_url}/alerts?limit={args.limit}", args.admin_key)

    print(json.dumps(resp, indent=2, ensure_ascii=False))
    return 1 if isinstance(resp, dict) and "error" in resp else 0


if __name__ == "__main__":
    raise SystemExit(main())
