#!/usr/bin/env python3
"""
verify_audit.py: verify the hash-chained auth audit log (JSONL).

Exit codes:
- 0: OK
- 1: Verification failed (broken link, edited line, state mismatch)
- 2: Log unreadable (not JSON / not objects)
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from zt_auth.audit import verify_chain


def main(argv=None) -> int:
    p = argparse.ArgumentParser(
        description="Verify ZeroTrust auth audit log integrity (hash-chained JSONL)."
    )
    p.add_argument(
        "log",
        type=Path,
        help="Path to audit JSONL file (e.g. audit/auth_audit.jsonl)",
    )
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/auth_audit.state)",
    )
    args = p.parse_args(argv)

    if not args.log.exists():
        print(f"FAIL: log not found: {args.log}", file=sys.stderr)
        return 2

    try:
        res = verify_chain(args.log, state_path=args.state)
    except ValueError as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 2

    if res.ok:
        print("OK")
        print(f"lines={res.lines}")
        if res.last_hash:
            print(f"last_hash={res.last_hash}")
        return 0

    print("FAIL", file=sys.stderr)
    print(res.message, file=sys.stderr)
    print(f"lines={res.lines}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
