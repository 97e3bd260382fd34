"""
zt_auth/hashing.py

Credential digests.

Both the raw identity token (RFID serial) and the raw PIN are reduced to
Keccak-256 digests before anything else touches them:

  id_hash     = keccak256(utf8(identity_token))   -> lookup key, safe to log
  secret_hash = keccak256(utf8(pin))              -> never logged or stored raw

Digests are rendered as 0x-prefixed 32-byte hex so they map 1:1 onto a
contract `bytes32` argument.
"""

import re

from web3 import Web3

_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


def digest(raw_value: str) -> str:
    return Web3.to_hex(Web3.keccak(text=raw_value))


def normalize_hash(value: str) -> str:
    """
    Canonical form of a caller-supplied id_hash: lowercase, 0x-prefixed.

    Raises ValueError if it is not a 32-byte hex digest.
    """
    v = str(value).strip().lower()
    if not v.startswith("0x"):
        v = "0x" + v
    if not _HASH_RE.match(v):
        raise ValueError("hash must be 32 bytes of hex")
    return v
