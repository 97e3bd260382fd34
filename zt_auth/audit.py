"""
zt_auth/audit.py

Tamper-evident auth audit log.

One JSON object per line (JSONL), hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

What goes in: decisions of the primary and wallet flows (approved / denied /
error + reason), id_hash, wallet address, client IP / user agent, and the
length + SHA3 of the signature. Never the raw identity token, PIN or PIN
digest.

Chain state is persisted in <dir>/auth_audit.state; appends take an flock on
<dir>/auth_audit.lock so concurrent workers keep one consistent chain.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

GENESIS_HASH = "0" * 64  # 32 bytes hex


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))


def build_common(
    *,
    flow: str,
    id_hash: Optional[str] = None,
    address: Optional[str] = None,
    client_id: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    signature: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Common audit fields. Keep this "boring" and stable.

    The client cookie is stored as a short hash so the log cannot be used to
    hijack a live conversation.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "flow": flow,
    }

    if id_hash:
        out["id_hash"] = id_hash
    if address:
        out["address"] = str(address).lower()
    if client_id:
        out["client"] = _sha3_256_hex(client_id.encode("utf-8"))[:16]
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]
    if signature:
        sig = str(signature).encode("utf-8")
        out["signature_len"] = len(sig)
        out["signature_sha3_256"] = _sha3_256_hex(sig)

    return out


class AuditLog:
    def __init__(self, directory: str, enabled: bool = True):
        self.enabled = enabled
        self.dir = Path(directory)
        self.log_path = self.dir / "auth_audit.jsonl"
        self.state_path = self.dir / "auth_audit.state"
        self.lock_path = self.dir / "auth_audit.lock"

    def _read_last_hash_unlocked(self) -> str:
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s

    def append(self, event: Dict[str, Any]) -> Optional[str]:
        """Append one event; returns its chain hash (None when disabled)."""
        if not self.enabled:
            return None

        self.dir.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = chain_hash(prev_hash, e)
                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash


# -----------------------------------------------------------------------------
# Verification (used by verify_audit.py and tests)
# -----------------------------------------------------------------------------
@dataclass
class ChainCheck:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def verify_chain(log_path: Path, state_path: Optional[Path] = None) -> ChainCheck:
    """
    Walk the log and recompute every link. A missing log is an empty, valid
    chain. Raises ValueError on lines that are not JSON objects.
    """
    prev = GENESIS_HASH
    lines = 0

    if log_path.exists():
        with open(log_path, "r", encoding="utf-8") as f:
            for lineno, raw in enumerate(f, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                obj = json.loads(raw)
                if not isinstance(obj, dict):
                    raise ValueError(f"{log_path}:{lineno}: line is not a JSON object")
                lines += 1

                if obj.get("prev_hash") != prev:
                    return ChainCheck(False, lines, prev, f"line {lineno}: prev_hash does not link")

                expect = chain_hash(prev, obj)
                if obj.get("hash") != expect:
                    return ChainCheck(False, lines, prev, f"line {lineno}: hash mismatch")

                prev = expect

    last = prev if lines else None

    if state_path is not None and state_path.exists():
        state_val = state_path.read_text(encoding="utf-8").strip().lower()
        if state_val != prev:
            return ChainCheck(False, lines, last, f"state mismatch: state={state_val} log_last={prev}")

    return ChainCheck(True, lines, last, "OK")
