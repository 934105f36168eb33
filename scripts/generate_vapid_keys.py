#!/usr/bin/env python3
"""Generate a VAPID key pair for holopush.

Prints base64url keys ready to paste into ``.env`` (or JSON with
``--json``). The public key is also the ``applicationServerKey``
the browser passes to ``pushManager.subscribe()``.

Usage:
    uv run scripts/generate_vapid_keys.py [--json]
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from holopush.notifications.vapid import generate_vapid_keys


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--json",
        action="store_true",
        help="print keys as a JSON object",
    )
    args = parser.parse_args()

    keys = generate_vapid_keys()
    if args.json:
        print(json.dumps(asdict(keys), indent=2))
        return
    print(f"VAPID_PUBLIC_KEY={keys.public_key}")
    print(f"VAPID_PRIVATE_KEY={keys.private_key}")


if __name__ == "__main__":
    main()
