#!/usr/bin/env python3
"""Emit Svix signature headers for a Clerk webhook payload."""

from __future__ import annotations

import argparse
import json
import shlex
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

from svix.webhooks import Webhook


def render_headers(*, secret: str, body: bytes, msg_id: str | None = None, timestamp: int | None = None) -> dict[str, str]:
    resolved_id = msg_id or f"msg_{uuid.uuid4().hex}"
    resolved_timestamp = timestamp if timestamp is not None else int(time.time())
    signed_at = datetime.fromtimestamp(resolved_timestamp, tz=timezone.utc)
    return {
        "svix-id": resolved_id,
        "svix-timestamp": str(resolved_timestamp),
        "svix-signature": Webhook(secret).sign(resolved_id, signed_at, body.decode("utf-8")),
    }


def render_curl(url: str, headers: dict[str, str], body: bytes) -> str:
    parts = ["curl", "-sS", "-X", "POST", shlex.quote(url), "-H", shlex.quote("Content-Type: application/json")]
    for name, value in headers.items():
        parts.extend(["-H", shlex.quote(f"{name}: {value}")])
    parts.extend(["--data-binary", shlex.quote(body.decode("utf-8"))])
    return " ".join(parts)


def main() -> None:
    parser = argparse.ArgumentParser(description="Sign a Clerk webhook event the way Svix does.")
    parser.add_argument("event", nargs="?", help="Path to the event JSON file (defaults to stdin)")
    parser.add_argument("--secret", required=True, help="Webhook signing secret (whsec_...)")
    parser.add_argument("--msg-id", help="svix-id to use (random when omitted)")
    parser.add_argument("--timestamp", type=int, help="svix-timestamp to use (now when omitted)")
    parser.add_argument("--url", help="Emit a curl command targeting this URL instead of JSON headers")
    args = parser.parse_args()

    raw = Path(args.event).read_bytes() if args.event else sys.stdin.buffer.read()
    # Re-serialise so the signed body matches what gets sent.
    body = json.dumps(json.loads(raw), separators=(",", ":")).encode("utf-8")
    headers = render_headers(secret=args.secret, body=body, msg_id=args.msg_id, timestamp=args.timestamp)

    if args.url:
        print(render_curl(args.url, headers, body))
    else:
        print(json.dumps({"headers": headers, "body": body.decode("utf-8")}, indent=2))


if __name__ == "__main__":
    main()
