"""
zt_auth/engine.py

Identity-binding & tiered re-authentication engine.

Flows
-----
Primary (IoT terminal):   authenticate(identity_token, pin)
    hash both -> ledger lookup -> first-time secret setup OR verify
    -> if the identity already has a wallet, refresh BOTH timestamps

Wallet (browser):         issue_challenge(client) / verify_ownership(client, ...)
    nonce -> personal_sign -> recover == claimed
    -> known wallet: refresh wallet timestamp only
    -> unknown wallet: ledger bindWallet, record locally, refresh BOTH

Authorization:            decide(wallet)
    tier recomputed from the session timestamps on every call

Policy choice: a successful primary auth on an already-bound identity also
refreshes last_wallet_auth_at. The ledger-verified RFID+PIN pair is treated as
at least as strong as a wallet signature. Change _refresh_after_primary if the
business rules say otherwise.

Concurrency
-----------
- first-time secret setup is serialized per id_hash and re-reads the ledger
  inside the lock, so a concurrent loser lands on the verify path
- first binds are serialized on the resolver lock and re-checked after the
  ledger write
- session timestamps use the store's atomic update
- ledger calls are never retried here
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from web3 import Web3

from .binding import BindingResolver
from .challenge import ChallengeIssuer, EthSignatureRecovery, SignatureRecovery, SignatureVerifier
from .errors import (
    BadRequest,
    BindFailed,
    BindingConflict,
    IdentityRequired,
    InvalidCredentials,
    LedgerBindingConflict,
    LedgerUnavailable,
    LedgerWriteError,
    NotRegistered,
    SetupFailed,
)
from .hashing import digest, normalize_hash
from .ledger import IdentityLedger, LedgerUser, build_ledger, normalize_bound_wallet
from .policy import FreshnessWindows, PolicyDecision, evaluate_session
from .storage import KeyedLocks, KeyValueStore, SessionRecord, SessionStore, build_kv_store

logger = logging.getLogger("zt_auth.engine")

NEXT_STEP_WALLET_BINDING = "wallet-binding"
NEXT_STEP_NONE = "none"


def _now_epoch() -> int:
    return int(time.time())


@dataclass(frozen=True)
class PrimaryAuthResult:
    id_hash: str
    bound_wallet: Optional[str]
    setup: bool
    next_step: str


@dataclass(frozen=True)
class OwnershipResult:
    address: str
    id_hash: str
    first_bind: bool
    session: SessionRecord


def _claimed_hash(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return normalize_hash(value)
    except ValueError as e:
        raise BadRequest("idHash is malformed") from e


def normalize_address(address: str) -> str:
    # compared against the recovered signer, so checksum casing adds nothing
    a = str(address or "").strip().lower()
    if not Web3.is_address(a):
        raise BadRequest("address is not a valid wallet address")
    return a


class AuthEngine:
    def __init__(
        self,
        ledger: IdentityLedger,
        kv: KeyValueStore,
        windows: FreshnessWindows,
        challenge_template: str,
        recovery: Optional[SignatureRecovery] = None,
        clock: Callable[[], int] = _now_epoch,
        challenge_ttl: int = 300,
        client_ttl: int = 3600,
    ):
        self.ledger = ledger
        self.sessions = SessionStore(kv)
        self.bindings = BindingResolver(kv)
        self.challenges = ChallengeIssuer(challenge_template, ttl_seconds=challenge_ttl, clock=clock)
        self.verifier = SignatureVerifier(recovery or EthSignatureRecovery())
        self.windows = windows
        self.clock = clock

        self._setup_locks = KeyedLocks()

        # client conversation -> (wallet it last proved, last seen); what /policy looks at
        self.client_ttl = client_ttl
        self._client_wallets: Dict[str, Tuple[str, int]] = {}
        self._client_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Primary factor
    # -------------------------------------------------------------------------
    def authenticate(self, identity_token: str, pin: str) -> PrimaryAuthResult:
        if not identity_token or not pin:
            raise BadRequest("identity token and PIN are required")

        id_hash = digest(identity_token)
        secret_hash = digest(pin)

        with self._setup_locks.get(id_hash):
            user = self.ledger.get_user(id_hash)
            if not user.exists:
                raise NotRegistered("identity is not registered on the ledger")

            setup = False
            if not user.has_secret:
                setup = self._first_time_setup(id_hash, secret_hash)
                if setup:
                    user = LedgerUser(exists=True, has_secret=True, bound_wallet=user.bound_wallet)
                else:
                    user = self.ledger.get_user(id_hash)

            if not setup and not self.ledger.verify_secret(id_hash, secret_hash):
                raise InvalidCredentials("invalid identity token or PIN")

        bound = normalize_bound_wallet(user.bound_wallet)
        if bound is None:
            logger.info("primary auth ok id_hash=%s setup=%s; wallet binding required", id_hash, setup)
            return PrimaryAuthResult(id_hash=id_hash, bound_wallet=None, setup=setup, next_step=NEXT_STEP_WALLET_BINDING)

        self.bindings.mirror(id_hash, bound)
        self._refresh_after_primary(bound)
        logger.info("primary auth ok id_hash=%s setup=%s wallet=%s", id_hash, setup, bound)
        return PrimaryAuthResult(id_hash=id_hash, bound_wallet=bound, setup=setup, next_step=NEXT_STEP_NONE)

    def _first_time_setup(self, id_hash: str, secret_hash: str) -> bool:
        """
        Trust-on-first-use: whoever first presents this identity token sets its
        PIN. Returns True when this call set the secret, False when the ledger
        shows someone else already did (caller then takes the verify path).
        """
        try:
            self.ledger.set_secret_first_time(id_hash, secret_hash)
            logger.info("secret initialized id_hash=%s", id_hash)
            return True
        except LedgerWriteError as e:
            # The write may have lost a race with another node, or landed
            # despite the error. Look at the authoritative state once.
            try:
                user = self.ledger.get_user(id_hash)
            except LedgerUnavailable:
                raise SetupFailed("secret setup was not confirmed by the ledger") from e
            if user.has_secret:
                logger.info("secret already initialized id_hash=%s; using verify path", id_hash)
                return False
            raise SetupFailed("secret setup was not confirmed by the ledger") from e

    def _refresh_after_primary(self, wallet: str) -> SessionRecord:
        return self.sessions.touch(wallet, self.clock(), full=True, wallet_proof=True)

    # -------------------------------------------------------------------------
    # Wallet factor
    # -------------------------------------------------------------------------
    def issue_challenge(self, client_id: str) -> str:
        return self.challenges.issue(client_id)

    def challenge_message(self, nonce: str) -> str:
        return self.challenges.message_for(nonce)

    def verify_ownership(
        self,
        client_id: str,
        address: str,
        signature: str,
        claimed_id_hash: Optional[str] = None,
    ) -> OwnershipResult:
        nonce = self.challenges.consume(client_id)

        if not address or not signature:
            raise BadRequest("address and signature are required")
        address = normalize_address(address)

        message = self.challenges.message_for(nonce)
        self.verifier.verify(message, address, signature)

        id_hash = self.bindings.identity_for(address)
        if id_hash is not None:
            claimed = _claimed_hash(claimed_id_hash)
            if claimed is not None and claimed != id_hash:
                raise BindingConflict("wallet already bound to a different identity")
            result = self._refresh_wallet(address, id_hash)
        else:
            result = self._first_bind(address, claimed_id_hash)

        self._remember_client(client_id, address)
        return result

    def _refresh_wallet(self, address: str, id_hash: str) -> OwnershipResult:
        session = self.sessions.touch(address, self.clock(), full=False, wallet_proof=True)
        logger.info("wallet re-proof ok wallet=%s id_hash=%s", address, id_hash)
        return OwnershipResult(address=address, id_hash=id_hash, first_bind=False, session=session)

    def _first_bind(self, address: str, claimed_id_hash: Optional[str]) -> OwnershipResult:
        id_hash = _claimed_hash(claimed_id_hash)
        if id_hash is None:
            raise IdentityRequired("wallet is not bound yet; idHash is required to bind it")

        with self.bindings.lock:
            # another request may have bound this wallet while we verified
            existing = self.bindings.identity_for(address)
            if existing == id_hash:
                return self._refresh_wallet(address, id_hash)
            self.bindings.check_available(id_hash, address)

            user = self.ledger.get_user(id_hash)
            if not user.exists:
                raise NotRegistered("identity is not registered on the ledger")

            ledger_wallet = normalize_bound_wallet(user.bound_wallet)
            if ledger_wallet is not None:
                self.bindings.mirror(id_hash, ledger_wallet)
                if ledger_wallet != address:
                    raise BindingConflict("identity already bound to a different wallet")
                return self._refresh_wallet(address, id_hash)

            try:
                self.ledger.bind_wallet(id_hash, address)
            except LedgerBindingConflict as e:
                raise BindingConflict("identity or wallet already bound on the ledger") from e
            except LedgerWriteError as e:
                self._confirm_bind(id_hash, address, e)

            self.bindings.record(id_hash, address)

        session = self.sessions.touch(address, self.clock(), full=True, wallet_proof=True)
        logger.info("wallet bound wallet=%s id_hash=%s", address, id_hash)
        return OwnershipResult(address=address, id_hash=id_hash, first_bind=True, session=session)

    def _confirm_bind(self, id_hash: str, address: str, err: LedgerWriteError) -> None:
        """
        bindWallet did not confirm. Read the identity back once: the write may
        have landed anyway, or another node may have bound it first. Returns
        only when the ledger shows exactly this binding.
        """
        try:
            user = self.ledger.get_user(id_hash)
        except LedgerUnavailable:
            raise BindFailed("wallet binding was not confirmed by the ledger") from err

        ledger_wallet = normalize_bound_wallet(user.bound_wallet)
        if ledger_wallet == address:
            logger.info("bindWallet landed despite error wallet=%s id_hash=%s", address, id_hash)
            return
        if ledger_wallet is not None:
            self.bindings.mirror(id_hash, ledger_wallet)
            raise BindingConflict("identity already bound to a different wallet") from err
        raise BindFailed("wallet binding was not confirmed by the ledger") from err

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------
    def _remember_client(self, client_id: str, address: str) -> None:
        now = self.clock()
        with self._client_lock:
            idle = [k for k, (_, seen) in self._client_wallets.items() if now - seen >= self.client_ttl]
            for k in idle:
                del self._client_wallets[k]
            self._client_wallets[client_id] = (address, now)

    def wallet_for_client(self, client_id: Optional[str]) -> Optional[str]:
        """
        Wallet this conversation last proved, or None once it sat idle past
        client_ttl. A hit counts as activity.
        """
        if not client_id:
            return None
        now = self.clock()
        with self._client_lock:
            entry = self._client_wallets.get(client_id)
            if entry is None:
                return None
            wallet, seen = entry
            if now - seen >= self.client_ttl:
                del self._client_wallets[client_id]
                return None
            self._client_wallets[client_id] = (wallet, now)
            return wallet

    def decide(self, wallet: Optional[str]) -> PolicyDecision:
        session = self.sessions.get(wallet) if wallet else None
        return evaluate_session(self.clock(), session, self.windows)


def build_engine(settings) -> AuthEngine:
    return AuthEngine(
        ledger=build_ledger(settings),
        kv=build_kv_store(settings),
        windows=FreshnessWindows(
            wallet_only=settings.WALLET_ONLY_WINDOW_SECONDS,
            full_relogin=settings.FULL_RELOGIN_WINDOW_SECONDS,
        ),
        challenge_template=settings.CHALLENGE_TEMPLATE,
        challenge_ttl=settings.CHALLENGE_TTL_SECONDS,
        client_ttl=settings.CLIENT_IDLE_TTL_SECONDS,
    )
