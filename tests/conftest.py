"""Test configuration and fixtures."""

import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Settings are read at import time: point them somewhere harmless BEFORE any
# zt_auth module is imported.
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["STORE_BACKEND"] = "memory"
os.environ["AUDIT_DIR"] = tempfile.mkdtemp(prefix="zt_audit_")
os.environ["WALLET_ONLY_WINDOW_SECONDS"] = "350"
os.environ["FULL_RELOGIN_WINDOW_SECONDS"] = "900"

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from zt_auth.engine import AuthEngine
from zt_auth.ledger import InMemoryIdentityLedger
from zt_auth.policy import FreshnessWindows
from zt_auth.storage import MemoryKeyValueStore

TEMPLATE = "Login to ZeroTrust - nonce:{nonce}"
T0 = 1_700_000_000


class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def sign(account, message: str) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return Web3.to_hex(signed.signature)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return InMemoryIdentityLedger()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def engine(ledger, kv, clock):
    return AuthEngine(
        ledger=ledger,
        kv=kv,
        windows=FreshnessWindows(wallet_only=350, full_relogin=900),
        challenge_template=TEMPLATE,
        clock=clock,
    )


@pytest.fixture
def wallet():
    return Account.create()


@pytest.fixture
def other_wallet():
    return Account.create()


def prove(engine, account, client_id="client-1", id_hash=None):
    """Run one full challenge/response for `account`."""
    nonce = engine.issue_challenge(client_id)
    sig = sign(account, engine.challenge_message(nonce))
    return engine.verify_ownership(client_id, account.address, sig, id_hash)
