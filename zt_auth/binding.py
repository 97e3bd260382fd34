"""
zt_auth/binding.py

Local mirror of the identity <-> wallet binding relation.

The ledger is the source of truth; this is a cache used for the reverse
lookup (wallet -> id_hash) the ledger cannot answer. Invariants:

  - an id_hash maps to at most one wallet
  - a wallet maps to at most one id_hash
  - an entry only appears after the ledger confirmed the bind (record) or
    reported it (mirror); never optimistically

Both directions live in the injected KeyValueStore:

  binding:id:<id_hash>     -> {"wallet": "0x..."}
  binding:wallet:<wallet>  -> {"id_hash": "0x..."}
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .errors import BindingConflict
from .storage import KeyValueStore

logger = logging.getLogger("zt_auth.binding")

ID_PREFIX = "binding:id:"
WALLET_PREFIX = "binding:wallet:"


class BindingResolver:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Held by the engine across check -> ledger write -> record."""
        return self._lock

    def wallet_for(self, id_hash: str) -> Optional[str]:
        raw = self.kv.get(ID_PREFIX + id_hash.lower())
        return raw.get("wallet") if raw else None

    def identity_for(self, wallet: str) -> Optional[str]:
        raw = self.kv.get(WALLET_PREFIX + wallet.lower())
        return raw.get("id_hash") if raw else None

    def check_available(self, id_hash: str, wallet: str) -> None:
        """Raise BindingConflict if either side is already bound elsewhere."""
        id_hash = id_hash.lower()
        wallet = wallet.lower()

        current_wallet = self.wallet_for(id_hash)
        if current_wallet is not None and current_wallet != wallet:
            raise BindingConflict("identity already bound to a different wallet")

        current_id = self.identity_for(wallet)
        if current_id is not None and current_id != id_hash:
            raise BindingConflict("wallet already bound to a different identity")

    def record(self, id_hash: str, wallet: str) -> None:
        """
        Record a binding the ledger has just confirmed.

        Re-checks both directions inside each atomic update so a concurrent
        writer (another worker sharing the store) cannot be silently
        overwritten.
        """
        id_hash = id_hash.lower()
        wallet = wallet.lower()

        def _set_wallet(current):
            if current and current.get("wallet") not in (None, wallet):
                raise BindingConflict("identity already bound to a different wallet")
            return {"wallet": wallet}

        def _set_identity(current):
            if current and current.get("id_hash") not in (None, id_hash):
                raise BindingConflict("wallet already bound to a different identity")
            return {"id_hash": id_hash}

        with self._lock:
            self.check_available(id_hash, wallet)
            previous = self.kv.get(ID_PREFIX + id_hash)
            self.kv.update(ID_PREFIX + id_hash, _set_wallet)
            try:
                self.kv.update(WALLET_PREFIX + wallet, _set_identity)
            except BindingConflict:
                # undo the forward half so no one-sided binding survives
                self.kv.update(ID_PREFIX + id_hash, lambda _: previous or {"wallet": None})
                raise

        logger.info("binding recorded id_hash=%s wallet=%s", id_hash, wallet)

    def mirror(self, id_hash: str, wallet: str) -> None:
        """
        Adopt a binding reported by the ledger (e.g. made by another node or
        before this cache existed). The ledger wins over any stale local entry.
        """
        id_hash = id_hash.lower()
        wallet = wallet.lower()

        with self._lock:
            if self.wallet_for(id_hash) == wallet and self.identity_for(wallet) == id_hash:
                return

            stale = self.wallet_for(id_hash)
            if stale is not None and stale != wallet:
                logger.warning(
                    "local binding for %s diverged from ledger (%s != %s); adopting ledger",
                    id_hash,
                    stale,
                    wallet,
                )
                self.kv.update(WALLET_PREFIX + stale, lambda _cur: {"id_hash": None})

            self.kv.update(WALLET_PREFIX + wallet, lambda _cur: {"id_hash": id_hash})
            self.kv.update(ID_PREFIX + id_hash, lambda _cur: {"wallet": wallet})
