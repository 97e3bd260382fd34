# zt_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the engine (engine.py).
#   - It MUST NOT implement crypto or policy itself.
#   - It owns only transport concerns: the client conversation cookie, the
#     AuthError -> HTTP mapping, and audit events.
#
# Key modules / responsibilities:
#   - config.py    : environment-driven settings (ledger, windows, store, audit)
#   - hashing.py   : Keccak digests of RFID token / PIN
#   - ledger.py    : IdentityLedger (web3 contract or in-memory)
#   - binding.py   : identity <-> wallet mirror, one-to-one
#   - challenge.py : nonces + EIP-191 signer recovery
#   - policy.py    : Fresh / WalletStale / FullStale tiers
#   - storage.py   : key-value backends + wallet-keyed sessions
#   - engine.py    : the flows tying all of the above together
#   - audit.py     : append-only hash-chained audit log
#
# Two client "lanes":
#   - IoT terminal : POST /authenticate {identityToken, pin}
#   - browser      : GET /challenge -> personal_sign -> POST /verify-ownership
#                    then GET /policy and GET /protected-state
#
# WARNING (DEPLOYMENT):
# - Challenge slots and the conversation->wallet map are in-process memory.
#   Run a single worker, or pin clients to a worker.
# -----------------------------------------------------------------------------

import logging
import secrets
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response

from .audit import AuditLog, build_common
from .config import settings
from .engine import build_engine
from .errors import AuthError, BadRequest
from .hashing import digest
from .models import AuthenticateRequest, VerifyOwnershipRequest
from .policy import Tier

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("zt_auth.main")

engine = build_engine(settings)
audit = AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)

app = FastAPI(
    title="ZeroTrust RFID + Wallet Auth Server",
    version="0.1.0",
)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _client_meta(request: Request) -> dict:
    return {
        "request_ip": (request.client.host if request.client else None),
        "user_agent": request.headers.get("user-agent"),
    }


def _client_id(request: Request) -> Optional[str]:
    return request.cookies.get(settings.CLIENT_COOKIE_NAME) or None


def _fail(err: AuthError, common: dict):
    audit.append(
        {
            **common,
            "result": "error" if err.http_status >= 500 else "denied",
            "reason": err.code,
        }
    )
    raise HTTPException(status_code=err.http_status, detail=err.as_dict())


# -----------------------------------------------------------------------------
# Primary factor (IoT terminal)
# -----------------------------------------------------------------------------
@app.post("/authenticate")
def authenticate(body: AuthenticateRequest, request: Request):
    meta = _client_meta(request)
    try:
        res = engine.authenticate(body.identity_token, body.pin)
    except AuthError as e:
        id_hash = digest(body.identity_token) if body.identity_token else None
        _fail(e, build_common(flow="primary", id_hash=id_hash, **meta))

    audit.append(
        {
            **build_common(flow="primary", id_hash=res.id_hash, address=res.bound_wallet, **meta),
            "result": "approved",
            "reason": "secret_initialized" if res.setup else "secret_valid",
        }
    )

    if res.setup:
        msg = "PIN initialized. Continue with wallet login."
    elif res.bound_wallet is None:
        msg = "Authentication successful. Proceed to wallet binding."
    else:
        msg = "Authentication successful."

    return {
        "ok": True,
        "msg": msg,
        "idHash": res.id_hash,
        "setup": res.setup,
        "boundWallet": res.bound_wallet,
        "nextStep": res.next_step,
    }


# -----------------------------------------------------------------------------
# Wallet factor (browser)
# -----------------------------------------------------------------------------
@app.get("/challenge")
def challenge(request: Request, response: Response):
    client_id = _client_id(request)
    if client_id is None:
        client_id = secrets.token_urlsafe(24)
        response.set_cookie(
            settings.CLIENT_COOKIE_NAME,
            client_id,
            httponly=True,
            samesite="lax",
            secure=settings.COOKIE_SECURE,
        )

    nonce = engine.issue_challenge(client_id)
    return {"nonce": nonce, "message": engine.challenge_message(nonce)}


@app.post("/verify-ownership")
def verify_ownership(body: VerifyOwnershipRequest, request: Request):
    client_id = _client_id(request)
    common = build_common(
        flow="wallet",
        id_hash=body.id_hash,
        address=body.address or None,
        client_id=client_id,
        signature=body.signature or None,
        **_client_meta(request),
    )

    try:
        if client_id is None:
            raise BadRequest("no active challenge; request a nonce first")
        res = engine.verify_ownership(client_id, body.address, body.signature, body.id_hash)
    except AuthError as e:
        _fail(e, common)

    audit.append(
        {
            **common,
            "id_hash": res.id_hash,
            "result": "approved",
            "reason": "wallet_bound" if res.first_bind else "wallet_reproof",
        }
    )

    return {
        "ok": True,
        "address": res.address,
        "idHash": res.id_hash,
        "firstBind": res.first_bind,
    }


# -----------------------------------------------------------------------------
# Authorization
# -----------------------------------------------------------------------------
@app.get("/policy")
def policy(request: Request):
    wallet = engine.wallet_for_client(_client_id(request))
    decision = engine.decide(wallet)
    return {**decision.as_dict(), "address": wallet}


@app.get("/protected-state")
def protected_state(request: Request):
    wallet = engine.wallet_for_client(_client_id(request))
    decision = engine.decide(wallet)

    if decision.tier == Tier.WALLET_STALE:
        raise HTTPException(
            status_code=401,
            detail={"error": "need-wallet", "message": "Wallet re-auth required.", **decision.as_dict()},
        )
    if decision.tier != Tier.FRESH:
        raise HTTPException(
            status_code=401,
            detail={
                "error": "need-full",
                "message": "Full re-login required (tap RFID + PIN on terminal).",
                **decision.as_dict(),
            },
        )

    return {
        "ok": True,
        "idHash": engine.bindings.identity_for(wallet),
        "boundWallet": wallet,
        "tier": decision.tier.value,
    }


@app.get("/healthz")
def healthz():
    return {"ok": True}
