"""
zt_auth/policy.py

Trust tiers, computed per request from two timestamps. Nothing here is
cached or scheduled; callers recompute on every authorization check.

  needFull       = (now - last_full)   >= full_relogin_window
  needWalletOnly = !needFull and (now - last_wallet) >= wallet_only_window

  FULL_STALE   if needFull
  WALLET_STALE if needWalletOnly
  FRESH        otherwise

A missing session is FULL_STALE (absence of trust state is maximum distrust).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .storage import SessionRecord


class Tier(str, Enum):
    FRESH = "fresh"
    WALLET_STALE = "wallet-stale"
    FULL_STALE = "full-stale"


@dataclass(frozen=True)
class FreshnessWindows:
    wallet_only: int
    full_relogin: int


@dataclass(frozen=True)
class PolicyDecision:
    tier: Tier
    need_full: bool
    need_wallet_only: bool

    @property
    def granted(self) -> bool:
        return self.tier == Tier.FRESH

    def as_dict(self):
        return {
            "tier": self.tier.value,
            "needFull": self.need_full,
            "needWalletOnly": self.need_wallet_only,
        }


def evaluate(now: int, last_full_auth_at: int, last_wallet_auth_at: int, windows: FreshnessWindows) -> PolicyDecision:
    need_full = (now - last_full_auth_at) >= windows.full_relogin
    need_wallet_only = (not need_full) and (now - last_wallet_auth_at) >= windows.wallet_only

    if need_full:
        tier = Tier.FULL_STALE
    elif need_wallet_only:
        tier = Tier.WALLET_STALE
    else:
        tier = Tier.FRESH

    return PolicyDecision(tier=tier, need_full=need_full, need_wallet_only=need_wallet_only)


def evaluate_session(now: int, session: Optional[SessionRecord], windows: FreshnessWindows) -> PolicyDecision:
    if session is None:
        return PolicyDecision(tier=Tier.FULL_STALE, need_full=True, need_wallet_only=False)
    return evaluate(now, session.last_full_auth_at, session.last_wallet_auth_at, windows)
