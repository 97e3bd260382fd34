"""
zt_auth/challenge.py

Wallet-ownership challenge/response.

  1) ChallengeIssuer hands a client a fresh nonce (one slot per client
     conversation; a new nonce overwrites the old one)
  2) the wallet personal_signs  CHALLENGE_TEMPLATE.format(nonce=...)
  3) SignatureVerifier rebuilds that exact message from the slot, recovers
     the signer (EIP-191) and requires it to EQUAL the claimed address

The slot is consumed by the first verification attempt, whatever its outcome,
and lapses after CHALLENGE_TTL_SECONDS if never used.

WARNING (DEPLOYMENT): slots are in-process memory. With several Uvicorn
workers a client must stick to one worker, or the slots need a shared backend.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import BadRequest, BadSignature, ChallengeReplayed

logger = logging.getLogger("zt_auth.challenge")


@dataclass
class Challenge:
    value: str
    issued_at: int
    expires_at: int
    consumed: bool = False

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at


class ChallengeIssuer:
    """
    One slot per client conversation. Slots are purged on every issue once
    they are consumed or past their TTL, so cookieless callers cannot grow
    the map beyond what they can mint within one TTL.
    """

    def __init__(
        self,
        template: str,
        ttl_seconds: int = 300,
        clock: Optional[Callable[[], int]] = None,
        nbytes: int = 16,
    ):
        self.template = template
        self.ttl_seconds = ttl_seconds
        self.clock = clock or (lambda: int(time.time()))
        self.nbytes = nbytes
        self._slots: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def message_for(self, nonce: str) -> str:
        return self.template.format(nonce=nonce)

    def _prune_unlocked(self, now: int) -> int:
        dead = [k for k, ch in self._slots.items() if ch.consumed or ch.is_expired(now)]
        for k in dead:
            self._slots.pop(k, None)
        return len(dead)

    def issue(self, client_id: str) -> str:
        nonce = secrets.token_hex(self.nbytes)
        now = self.clock()
        with self._lock:
            self._prune_unlocked(now)
            self._slots[client_id] = Challenge(value=nonce, issued_at=now, expires_at=now + self.ttl_seconds)
        return nonce

    def consume(self, client_id: str) -> str:
        """
        Take the client's active nonce and mark it used.

        Raises BadRequest if none was issued (or it expired), ChallengeReplayed
        if it was already consumed.
        """
        with self._lock:
            ch = self._slots.get(client_id)
            if ch is None:
                raise BadRequest("no active challenge; request a nonce first")
            if ch.consumed:
                raise ChallengeReplayed("challenge already used; request a new nonce")
            ch.consumed = True
            if ch.is_expired(self.clock()):
                raise BadRequest("challenge expired; request a new nonce")
            return ch.value


# -----------------------------------------------------------------------------
# Signature recovery capability
# -----------------------------------------------------------------------------
class SignatureRecovery(ABC):
    @abstractmethod
    def recover_signer(self, message: str, signature: str) -> str:
        pass


class EthSignatureRecovery(SignatureRecovery):
    """EIP-191 personal_sign recovery via eth_account."""

    def recover_signer(self, message: str, signature: str) -> str:
        return Account.recover_message(encode_defunct(text=message), signature=signature)


class SignatureVerifier:
    def __init__(self, recovery: SignatureRecovery):
        self.recovery = recovery

    def verify(self, message: str, address: str, signature: str) -> str:
        """
        Returns the recovered address (lowercased) when it matches `address`.

        Raises BadSignature on mismatch or on a signature that cannot be
        recovered at all.
        """
        try:
            recovered = self.recovery.recover_signer(message, signature)
        except Exception as e:
            logger.info("signature recovery failed: %s", str(e)[:200])
            raise BadSignature("signature could not be recovered") from e

        recovered = str(recovered).strip().lower()
        if recovered != str(address).strip().lower():
            raise BadSignature("signature does not match address")

        return recovered
