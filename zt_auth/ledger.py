"""
zt_auth/ledger.py

IdentityLedger: the authoritative store of identity registration, secret
digests and wallet bindings.

The engine only ever talks to the narrow interface below:

    get_user(id_hash)                      -> LedgerUser(exists, has_secret, bound_wallet)
    set_secret_first_time(id_hash, secret) -> None (confirmed) | LedgerWriteError
    verify_secret(id_hash, secret)         -> bool
    bind_wallet(id_hash, address)          -> None (confirmed) | LedgerWriteError
                                              (LedgerBindingConflict when already bound)

Failure contract:
  - reads that cannot complete raise LedgerUnavailable
  - writes that do not confirm raise LedgerWriteError
  - nothing in here retries; a write that "failed" may still have landed

Two implementations:
  - Web3IdentityLedger     : contract on an EVM chain (operator-signed writes,
                             awaited to a successful receipt)
  - InMemoryIdentityLedger : same append-only semantics, for dev and tests
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from eth_account import Account
from web3 import Web3

from .errors import LedgerBindingConflict, LedgerUnavailable, LedgerWriteError
from .hashing import digest

logger = logging.getLogger("zt_auth.ledger")

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_bound_wallet(address: Optional[str]) -> Optional[str]:
    """Empty / zero address means "not bound yet"."""
    if not address:
        return None
    a = str(address).strip().lower()
    if a == ZERO_ADDRESS:
        return None
    return a


@dataclass(frozen=True)
class LedgerUser:
    exists: bool
    has_secret: bool
    bound_wallet: Optional[str] = None


class IdentityLedger(ABC):
    @abstractmethod
    def get_user(self, id_hash: str) -> LedgerUser:
        pass

    @abstractmethod
    def set_secret_first_time(self, id_hash: str, secret_hash: str) -> None:
        pass

    @abstractmethod
    def verify_secret(self, id_hash: str, secret_hash: str) -> bool:
        pass

    @abstractmethod
    def bind_wallet(self, id_hash: str, address: str) -> None:
        pass


# -----------------------------------------------------------------------------
# In-memory ledger (dev / tests)
# -----------------------------------------------------------------------------
@dataclass
class _LedgerEntry:
    secret_hash: Optional[str] = None
    bound_wallet: Optional[str] = None


class InMemoryIdentityLedger(IdentityLedger):
    """
    Mirrors the contract's rules: registration is operator-only, the secret can
    be set once, a wallet can be bound once. Violations "revert" with
    LedgerWriteError just like a failed transaction would.

    `fail_reads` / `fail_writes` let tests simulate an unreachable chain.
    """

    def __init__(self):
        self._users: Dict[str, _LedgerEntry] = {}
        self._lock = threading.Lock()
        self.fail_reads = False
        self.fail_writes = False
        self.calls: Dict[str, int] = {
            "get_user": 0,
            "set_secret_first_time": 0,
            "verify_secret": 0,
            "bind_wallet": 0,
        }

    # operator side (the contract admin's addUser)
    def register(self, identity_token: str) -> str:
        id_hash = digest(identity_token)
        self.register_hash(id_hash)
        return id_hash

    def register_hash(self, id_hash: str) -> None:
        with self._lock:
            self._users.setdefault(id_hash, _LedgerEntry())

    def get_user(self, id_hash: str) -> LedgerUser:
        with self._lock:
            self.calls["get_user"] += 1
            if self.fail_reads:
                raise LedgerUnavailable("ledger read failed")
            entry = self._users.get(id_hash)
            if entry is None:
                return LedgerUser(exists=False, has_secret=False, bound_wallet=None)
            return LedgerUser(
                exists=True,
                has_secret=entry.secret_hash is not None,
                bound_wallet=entry.bound_wallet,
            )

    def set_secret_first_time(self, id_hash: str, secret_hash: str) -> None:
        with self._lock:
            self.calls["set_secret_first_time"] += 1
            if self.fail_writes:
                raise LedgerWriteError("setSecretFirstTime not confirmed")
            entry = self._users.get(id_hash)
            if entry is None:
                raise LedgerWriteError("unknown identity")
            if entry.secret_hash is not None:
                raise LedgerWriteError("secret already set")
            entry.secret_hash = secret_hash

    def verify_secret(self, id_hash: str, secret_hash: str) -> bool:
        with self._lock:
            self.calls["verify_secret"] += 1
            if self.fail_reads:
                raise LedgerUnavailable("ledger read failed")
            entry = self._users.get(id_hash)
            return bool(entry and entry.secret_hash is not None and entry.secret_hash == secret_hash)

    def bind_wallet(self, id_hash: str, address: str) -> None:
        with self._lock:
            self.calls["bind_wallet"] += 1
            if self.fail_writes:
                raise LedgerWriteError("bindWallet not confirmed")
            entry = self._users.get(id_hash)
            if entry is None:
                raise LedgerWriteError("unknown identity")
            if entry.bound_wallet is not None:
                raise LedgerBindingConflict("wallet already bound")
            if any(e.bound_wallet == address.lower() for e in self._users.values()):
                raise LedgerBindingConflict("address already bound")
            entry.bound_wallet = address.lower()


# -----------------------------------------------------------------------------
# Contract-backed ledger
# -----------------------------------------------------------------------------
# Only the functions the engine consumes. Identity keys and secrets travel as
# bytes32 digests; the raw RFID / PIN never reach the chain.
IDENTITY_LEDGER_ABI = [
    {
        "inputs": [{"internalType": "bytes32", "name": "idHash", "type": "bytes32"}],
        "name": "getUser",
        "outputs": [
            {"internalType": "bool", "name": "exists", "type": "bool"},
            {"internalType": "bool", "name": "hasSecret", "type": "bool"},
            {"internalType": "address", "name": "boundWallet", "type": "address"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "idHash", "type": "bytes32"},
            {"internalType": "bytes32", "name": "secretHash", "type": "bytes32"},
        ],
        "name": "setSecretFirstTime",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "idHash", "type": "bytes32"},
            {"internalType": "bytes32", "name": "secretHash", "type": "bytes32"},
        ],
        "name": "verifySecret",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "bytes32", "name": "idHash", "type": "bytes32"},
            {"internalType": "address", "name": "wallet", "type": "address"},
        ],
        "name": "bindWallet",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def _b32(h: str) -> bytes:
    return Web3.to_bytes(hexstr=h)


class Web3IdentityLedger(IdentityLedger):
    def __init__(self, rpc_url: str, contract_address: str, operator_key: str, tx_timeout: int = 120):
        self.web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=IDENTITY_LEDGER_ABI,
        )
        self.account = Account.from_key(operator_key)
        self.tx_timeout = tx_timeout

        # Serialize operator-signed writes so transaction nonces never collide.
        self._tx_lock = threading.Lock()

    def get_user(self, id_hash: str) -> LedgerUser:
        try:
            exists, has_secret, bound = self.contract.functions.getUser(_b32(id_hash)).call()
        except Exception as e:
            raise LedgerUnavailable("getUser call failed") from e
        return LedgerUser(
            exists=bool(exists),
            has_secret=bool(has_secret),
            bound_wallet=normalize_bound_wallet(bound),
        )

    def verify_secret(self, id_hash: str, secret_hash: str) -> bool:
        try:
            return bool(self.contract.functions.verifySecret(_b32(id_hash), _b32(secret_hash)).call())
        except Exception as e:
            raise LedgerUnavailable("verifySecret call failed") from e

    def set_secret_first_time(self, id_hash: str, secret_hash: str) -> None:
        self._transact("setSecretFirstTime", _b32(id_hash), _b32(secret_hash))

    def bind_wallet(self, id_hash: str, address: str) -> None:
        self._transact("bindWallet", _b32(id_hash), Web3.to_checksum_address(address))

    def _transact(self, fn_name: str, *args) -> None:
        """
        Build, sign, send and await one contract write.

        Success means a mined receipt with status == 1. Anything else (send
        error, timeout, revert) is a LedgerWriteError. No retry: the tx may
        still be pending or mined when we give up.
        """
        with self._tx_lock:
            try:
                fn = getattr(self.contract.functions, fn_name)(*args)
                tx = fn.build_transaction(
                    {
                        "from": self.account.address,
                        "nonce": self.web3.eth.get_transaction_count(self.account.address, "pending"),
                        "chainId": self.web3.eth.chain_id,
                    }
                )
                signed = self.account.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
                receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
            except Exception as e:
                logger.warning("ledger write %s not confirmed: %s", fn_name, str(e)[:200])
                raise LedgerWriteError(f"{fn_name} not confirmed") from e

        if int(receipt["status"]) != 1:
            logger.warning("ledger write %s reverted (tx=%s)", fn_name, Web3.to_hex(tx_hash))
            raise LedgerWriteError(f"{fn_name} reverted")

        logger.info("ledger write %s confirmed (tx=%s)", fn_name, Web3.to_hex(tx_hash))


def build_ledger(settings) -> IdentityLedger:
    if settings.LEDGER_BACKEND == "web3":
        return Web3IdentityLedger(
            rpc_url=settings.LEDGER_RPC_URL,
            contract_address=settings.LEDGER_CONTRACT_ADDRESS,
            operator_key=settings.LEDGER_OPERATOR_KEY,
            tx_timeout=settings.LEDGER_TX_TIMEOUT_SECONDS,
        )

    ledger = InMemoryIdentityLedger()
    for token in settings.seed_tokens:
        ledger.register(token)
    if settings.seed_tokens:
        logger.info("memory ledger seeded with %d identities", len(settings.seed_tokens))
    return ledger
