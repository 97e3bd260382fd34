"""
zt_auth/errors.py

Stable error taxonomy for the auth engine.

Every failure the engine reports is an AuthError subclass carrying:
  - code        : stable machine-readable string (safe to return to clients)
  - http_status : what the HTTP layer should answer with

Ledger/transport failures are their own kinds. A caller must be able to tell
"wrong PIN" (InvalidCredentials) from "chain unreachable" (LedgerUnavailable).
"""

from __future__ import annotations

from typing import Any, Dict


class AuthError(Exception):
    code = "auth_error"
    http_status = 400

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            d.update(self.details)
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class BadRequest(AuthError):
    code = "bad_request"
    http_status = 400


class ChallengeReplayed(BadRequest):
    code = "challenge_replayed"


class NotRegistered(AuthError):
    code = "not_registered"
    http_status = 404


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    http_status = 403


class BadSignature(AuthError):
    code = "bad_signature"
    http_status = 401


class BindingConflict(AuthError):
    code = "binding_conflict"
    http_status = 409


class IdentityRequired(AuthError):
    code = "identity_required"
    http_status = 428


class LedgerUnavailable(AuthError):
    code = "ledger_unavailable"
    http_status = 503


class SetupFailed(AuthError):
    code = "setup_failed"
    http_status = 502


class BindFailed(AuthError):
    code = "bind_failed"
    http_status = 502


# -----------------------------------------------------------------------------
# Adapter-level write failure (never surfaced directly)
# -----------------------------------------------------------------------------
class LedgerWriteError(Exception):
    """
    A ledger write did not confirm (reverted, dropped, timed out, or the
    transport failed while sending).

    The write MAY still have landed on-chain. Callers must not retry here;
    the engine maps this to SetupFailed / BindFailed and leaves retry to the
    external caller.
    """


class LedgerBindingConflict(LedgerWriteError):
    """
    The ledger refused a bind because the identity or the address already
    carries a binding. Definitive: nothing landed, and the engine answers
    BindingConflict instead of BindFailed.
    """
