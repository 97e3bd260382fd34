import gc
import threading

import pytest

from conftest import T0, prove, sign
from zt_auth.errors import (
    BadRequest,
    BadSignature,
    BindFailed,
    BindingConflict,
    ChallengeReplayed,
    IdentityRequired,
    LedgerWriteError,
    NotRegistered,
)
from zt_auth.policy import Tier


@pytest.fixture
def id_hash(engine, ledger):
    h = ledger.register("04A1")
    engine.authenticate("04A1", "1234")
    return h


def test_challenge_message_uses_template(engine):
    nonce = engine.issue_challenge("c1")
    assert engine.challenge_message(nonce) == f"Login to ZeroTrust - nonce:{nonce}"


def test_nonces_are_fresh(engine):
    assert engine.issue_challenge("c1") != engine.issue_challenge("c1")


def test_no_challenge_is_bad_request(engine, wallet):
    with pytest.raises(BadRequest):
        engine.verify_ownership("never-asked", wallet.address, "0x00")


def test_missing_address_or_signature_is_bad_request(engine, wallet):
    engine.issue_challenge("c1")
    with pytest.raises(BadRequest):
        engine.verify_ownership("c1", "", "0x00")


def test_malformed_address_is_bad_request(engine, wallet):
    nonce = engine.issue_challenge("c1")
    sig = sign(wallet, engine.challenge_message(nonce))
    with pytest.raises(BadRequest):
        engine.verify_ownership("c1", "0x1234", sig)


def test_first_bind_refreshes_both(engine, ledger, clock, wallet, id_hash):
    clock.advance(10)
    res = prove(engine, wallet, id_hash=id_hash)

    assert res.first_bind is True
    assert res.id_hash == id_hash
    assert ledger.get_user(id_hash).bound_wallet == wallet.address.lower()
    sess = engine.sessions.get(wallet.address)
    assert sess.last_full_auth_at == T0 + 10
    assert sess.last_wallet_auth_at == T0 + 10
    assert engine.decide(wallet.address).tier == Tier.FRESH


def test_first_bind_accepts_uppercase_id_hash(engine, wallet, id_hash):
    res = prove(engine, wallet, id_hash=id_hash.upper().replace("0X", "0x"))
    assert res.id_hash == id_hash


def test_refresh_only_touches_wallet_timestamp(engine, ledger, clock, wallet, id_hash):
    prove(engine, wallet, id_hash=id_hash)
    assert ledger.calls["bind_wallet"] == 1

    for step in (400, 400):
        clock.advance(step)
        res = prove(engine, wallet)
        assert res.first_bind is False
        assert res.id_hash == id_hash

    assert ledger.calls["bind_wallet"] == 1
    sess = engine.sessions.get(wallet.address)
    assert sess.last_full_auth_at == T0
    assert sess.last_wallet_auth_at == T0 + 800


def test_wallet_stale_then_reproof_is_fresh(engine, clock, wallet, id_hash):
    prove(engine, wallet, id_hash=id_hash)
    clock.advance(400)
    assert engine.decide(wallet.address).tier == Tier.WALLET_STALE
    prove(engine, wallet)
    assert engine.decide(wallet.address).tier == Tier.FRESH
    clock.advance(501)
    assert engine.decide(wallet.address).tier == Tier.FULL_STALE


def test_unbound_wallet_without_identity(engine, wallet):
    with pytest.raises(IdentityRequired):
        prove(engine, wallet)


def test_bind_to_unregistered_identity(engine, wallet):
    with pytest.raises(NotRegistered):
        prove(engine, wallet, id_hash="0x" + "ab" * 32)


def test_different_signer_is_bad_signature(engine, wallet, other_wallet, id_hash):
    nonce = engine.issue_challenge("c1")
    sig = sign(other_wallet, engine.challenge_message(nonce))
    with pytest.raises(BadSignature):
        engine.verify_ownership("c1", wallet.address, sig, id_hash)
    assert engine.bindings.identity_for(wallet.address) is None


def test_garbage_signature_is_bad_signature(engine, wallet, id_hash):
    engine.issue_challenge("c1")
    with pytest.raises(BadSignature):
        engine.verify_ownership("c1", wallet.address, "0xdeadbeef", id_hash)


def test_signature_over_overwritten_nonce_fails(engine, wallet, id_hash):
    old = engine.issue_challenge("c1")
    engine.issue_challenge("c1")
    sig = sign(wallet, engine.challenge_message(old))
    with pytest.raises(BadSignature):
        engine.verify_ownership("c1", wallet.address, sig, id_hash)


def test_nonce_is_single_use(engine, wallet, id_hash):
    nonce = engine.issue_challenge("c1")
    sig = sign(wallet, engine.challenge_message(nonce))
    engine.verify_ownership("c1", wallet.address, sig, id_hash)
    with pytest.raises(ChallengeReplayed):
        engine.verify_ownership("c1", wallet.address, sig, id_hash)


def test_failed_attempt_still_consumes_nonce(engine, wallet, other_wallet, id_hash):
    nonce = engine.issue_challenge("c1")
    msg = engine.challenge_message(nonce)
    with pytest.raises(BadSignature):
        engine.verify_ownership("c1", wallet.address, sign(other_wallet, msg), id_hash)
    with pytest.raises(ChallengeReplayed):
        engine.verify_ownership("c1", wallet.address, sign(wallet, msg), id_hash)


def test_nonce_slots_are_per_client(engine, wallet, id_hash):
    n1 = engine.issue_challenge("c1")
    engine.issue_challenge("c2")
    sig = sign(wallet, engine.challenge_message(n1))
    res = engine.verify_ownership("c1", wallet.address, sig, id_hash)
    assert res.first_bind is True


def test_identity_cannot_rebind_to_second_wallet(engine, ledger, wallet, other_wallet, id_hash):
    prove(engine, wallet, id_hash=id_hash)
    with pytest.raises(BindingConflict):
        prove(engine, other_wallet, client_id="c2", id_hash=id_hash)

    assert engine.bindings.wallet_for(id_hash) == wallet.address.lower()
    assert ledger.get_user(id_hash).bound_wallet == wallet.address.lower()
    assert ledger.calls["bind_wallet"] == 1


def test_wallet_cannot_bind_second_identity(engine, ledger, wallet, id_hash):
    prove(engine, wallet, id_hash=id_hash)
    second = ledger.register("04B2")
    with pytest.raises(BindingConflict):
        prove(engine, wallet, id_hash=second)
    assert ledger.get_user(second).bound_wallet is None


def test_ledger_binding_to_other_wallet_is_conflict(engine, ledger, wallet, other_wallet, id_hash):
    ledger.bind_wallet(id_hash, other_wallet.address)
    with pytest.raises(BindingConflict):
        prove(engine, wallet, id_hash=id_hash)
    # the ledger's binding is mirrored locally instead
    assert engine.bindings.identity_for(other_wallet.address) == id_hash


def test_bind_write_failure_records_nothing(engine, ledger, wallet, id_hash):
    ledger.fail_writes = True
    with pytest.raises(BindFailed):
        prove(engine, wallet, id_hash=id_hash)
    assert engine.bindings.identity_for(wallet.address) is None
    assert engine.bindings.wallet_for(id_hash) is None
    assert engine.sessions.get(wallet.address) is None


def test_concurrent_first_binds_one_winner(engine, ledger, id_hash):
    from eth_account import Account

    accounts = [Account.create() for _ in range(6)]
    outcomes = {}
    barrier = threading.Barrier(len(accounts))

    def worker(i, acct):
        client = f"c{i}"
        nonce = engine.issue_challenge(client)
        sig = sign(acct, engine.challenge_message(nonce))
        barrier.wait()
        try:
            engine.verify_ownership(client, acct.address, sig, id_hash)
            outcomes[i] = "bound"
        except BindingConflict:
            outcomes[i] = "conflict"

    threads = [threading.Thread(target=worker, args=(i, a)) for i, a in enumerate(accounts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert list(outcomes.values()).count("bound") == 1
    assert list(outcomes.values()).count("conflict") == len(accounts) - 1
    assert ledger.calls["bind_wallet"] == 1


def test_decide_without_wallet_is_full_stale(engine):
    assert engine.decide(None).tier == Tier.FULL_STALE
    assert engine.decide("0x" + "11" * 20).tier == Tier.FULL_STALE


def test_client_remembers_proved_wallet(engine, wallet, id_hash):
    prove(engine, wallet, client_id="browser", id_hash=id_hash)
    assert engine.wallet_for_client("browser") == wallet.address.lower()
    assert engine.wallet_for_client("someone-else") is None
    assert engine.wallet_for_client(None) is None


def test_wallet_bound_elsewhere_on_ledger_is_conflict(engine, ledger, wallet, id_hash):
    # the ledger knows a binding this node never saw
    other_identity = ledger.register("04B2")
    ledger.bind_wallet(other_identity, wallet.address)

    with pytest.raises(BindingConflict):
        prove(engine, wallet, id_hash=id_hash)
    assert ledger.get_user(id_hash).bound_wallet is None
    assert engine.bindings.wallet_for(id_hash) is None


def test_bind_that_landed_despite_error_is_recorded(engine, ledger, wallet, id_hash, monkeypatch):
    original = ledger.bind_wallet

    def lost_receipt(h, address):
        original(h, address)
        raise LedgerWriteError("bindWallet not confirmed")

    monkeypatch.setattr(ledger, "bind_wallet", lost_receipt)
    res = prove(engine, wallet, id_hash=id_hash)

    assert res.first_bind is True
    assert engine.bindings.identity_for(wallet.address) == id_hash
    assert engine.decide(wallet.address).tier == Tier.FRESH


def test_failed_bind_with_other_wallet_on_read_back_is_conflict(
    engine, ledger, wallet, other_wallet, id_hash, monkeypatch
):
    def raced(h, address):
        # another node's bind won just before ours was dropped
        ledger._users[h].bound_wallet = other_wallet.address.lower()
        raise LedgerWriteError("bindWallet not confirmed")

    monkeypatch.setattr(ledger, "bind_wallet", raced)
    with pytest.raises(BindingConflict):
        prove(engine, wallet, id_hash=id_hash)
    assert engine.bindings.identity_for(wallet.address) is None
    assert engine.bindings.identity_for(other_wallet.address) == id_hash


def test_bind_failure_with_ledger_down_on_read_back(engine, ledger, wallet, id_hash, monkeypatch):
    def down(h, address):
        ledger.fail_reads = True
        raise LedgerWriteError("bindWallet not confirmed")

    monkeypatch.setattr(ledger, "bind_wallet", down)
    with pytest.raises(BindFailed):
        prove(engine, wallet, id_hash=id_hash)
    assert engine.bindings.wallet_for(id_hash) is None


def test_malformed_claim_on_bound_wallet_is_bad_request(engine, wallet, id_hash):
    prove(engine, wallet, id_hash=id_hash)
    with pytest.raises(BadRequest):
        prove(engine, wallet, id_hash="0xzz")
    # a well-formed matching claim is still accepted
    assert prove(engine, wallet, id_hash=id_hash).first_bind is False


def test_expired_challenge_rejected(engine, clock, wallet, id_hash):
    nonce = engine.issue_challenge("c1")
    sig = sign(wallet, engine.challenge_message(nonce))
    clock.advance(300)
    with pytest.raises(BadRequest, match="expired"):
        engine.verify_ownership("c1", wallet.address, sig, id_hash)
    assert engine.bindings.identity_for(wallet.address) is None


def test_challenge_slots_stay_bounded(engine, clock):
    for i in range(500):
        engine.issue_challenge(f"anon-{i}")
    assert len(engine.challenges) == 500

    clock.advance(301)
    engine.issue_challenge("fresh")
    assert len(engine.challenges) == 1


def test_consumed_challenges_are_purged(engine, wallet, id_hash):
    prove(engine, wallet, client_id="c1", id_hash=id_hash)
    engine.issue_challenge("c2")
    assert len(engine.challenges) == 1


def test_setup_locks_released_for_unknown_identities(engine):
    for i in range(500):
        with pytest.raises(NotRegistered):
            engine.authenticate(f"random-{i}", "1")
    gc.collect()
    assert len(engine._setup_locks) == 0


def test_idle_client_forgets_wallet(engine, clock, wallet, id_hash):
    prove(engine, wallet, client_id="browser", id_hash=id_hash)
    clock.advance(3599)
    assert engine.wallet_for_client("browser") == wallet.address.lower()

    clock.advance(3600)
    assert engine.wallet_for_client("browser") is None


def test_client_map_purged_on_insert(engine, clock, wallet, other_wallet, ledger, id_hash):
    prove(engine, wallet, client_id="old-browser", id_hash=id_hash)
    clock.advance(3600)
    second = ledger.register("04B2")
    prove(engine, other_wallet, client_id="new-browser", id_hash=second)
    assert set(engine._client_wallets) == {"new-browser"}
