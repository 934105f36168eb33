#!/usr/bin/env python3
"""Trigger a holopush broadcast to every subscriber.

Builds a notification payload from --title/--body/--url (or reads
one from a JSON file) and POSTs it to ``/send-notification``.

Usage:
    uv run scripts/send_notification.py <server-url> --title T [--body B] [--url U]
    uv run scripts/send_notification.py <server-url> --payload payload.json

The bearer secret is read from --auth-key or the AUTH_KEY env var.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

import httpx


def _build_payload(args: argparse.Namespace) -> dict:
    if args.payload:
        return json.loads(Path(args.payload).read_text())
    if not args.title:
        raise SystemExit("--title or --payload is required")
    payload = {"title": args.title, "body": args.body}
    if args.url:
        payload["url"] = args.url
    if args.icon:
        payload["icon"] = args.icon
    return payload


def main() -> None:
    parser = argparse.ArgumentParser(description="Broadcast a push notification")
    parser.add_argument("server", help="holopush base URL")
    parser.add_argument("--title")
    parser.add_argument("--body", default="")
    parser.add_argument("--url")
    parser.add_argument("--icon")
    parser.add_argument("--payload", help="JSON file with the full payload")
    parser.add_argument("--auth-key", default=os.environ.get("AUTH_KEY", ""))
    parser.add_argument("--timeout", type=float, default=30.0)
    args = parser.parse_args()

    if not args.auth_key:
        raise SystemExit("--auth-key or AUTH_KEY is required")

    resp = httpx.post(
        f"{args.server.rstrip('/')}/send-notification",
        json=_build_payload(args),
        headers={"Authorization": f"Bearer {args.auth_key}"},
        timeout=args.timeout,
    )
    if resp.status_code != 200:
        print(f"Broadcast failed ({resp.status_code}): {resp.text}", file=sys.stderr)
        sys.exit(1)
    print(f"Sent to {resp.json()['sent']} subscriber(s)")


if __name__ == "__main__":
    main()
