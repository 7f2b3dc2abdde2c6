#!/usr/bin/env python3
"""Trigger an event-reminder, birthday, or recurring-message run on a live backend and print the summary.

Meant for the daily cron hook and for manual reruns from the admin viewer's host.
"""

from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from datetime import date

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
BASE_URL_DEFAULT = "http://localhost:8000/api/v1/reminders"
JOB_PATHS = {
    "events": "/events/run",
    "birthdays": "/birthdays/run",
    "recurring": "/recurring/run",
}
JOB_NAMES = {
    "events": "process_event_reminders",
    "birthdays": "process_birthday_messages",
    "recurring": "process_recurring_messages",
}


def _request_json(url: str, *, method: str = "GET", data: dict | None = None, timeout: int = 120) -> tuple[int, dict]:
    body = json.dumps(data).encode("utf-8") if data is not None else None
    req = urllib.request.Request(
        url,
        data=body,
        headers={"Content-Type": "application/json"},
        method=method,
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="replace")
        try:
            return exc.code, json.loads(raw)
        except json.JSONDecodeError:
            return exc.code, {"error": raw}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger a reminder job run.")
    parser.add_argument("job", choices=sorted(JOB_PATHS), help="Which job to run")
    parser.add_argument("--base-url", default=BASE_URL_DEFAULT, help="Reminders API base URL")
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Run as if today were this date (YYYY-MM-DD); the backend must allow overrides",
    )
    parser.add_argument("--show-errors", action="store_true", help="Print the stored error details of the run")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    base_url = args.base_url.rstrip("/")
    payload = {"today": args.today.isoformat()} if args.today else None

    status, summary = _request_json(f"{base_url}{JOB_PATHS[args.job]}", method="POST", data=payload)
    print(json.dumps(summary, indent=2, sort_keys=True))
    if status >= 400:
        print(f"run failed with HTTP {status}", file=sys.stderr)
        return 1

    if args.show_errors:
        status, latest = _request_json(f"{base_url}/runs/latest?job_name={JOB_NAMES[args.job]}")
        if status == 200:
            _, details = _request_json(f"{base_url}/runs/{latest['log_id']}/errors")
            for item in details.get("items", []):
                print(f"  [{item['category']}/{item['code']}] {item['message']}")
        else:
            print(f"could not load run details (HTTP {status})", file=sys.stderr)

    return 0 if summary.get("status") != "failed" else 2


if __name__ == "__main__":
    raise SystemExit(main())
