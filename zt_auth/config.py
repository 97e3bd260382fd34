import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger("zt_auth.config")


class Settings(BaseSettings):
    # ledger: "memory" (dev / tests) or "web3" (contract on an EVM chain)
    LEDGER_BACKEND: str = "memory"
    LEDGER_RPC_URL: str = ""
    LEDGER_CONTRACT_ADDRESS: str = ""
    LEDGER_OPERATOR_KEY: str = ""
    LEDGER_TX_TIMEOUT_SECONDS: int = 120

    # memory ledger only: raw identity tokens registered at startup
    LEDGER_SEED_TOKENS: str = ""

    # re-auth tiers
    WALLET_ONLY_WINDOW_SECONDS: int = 350
    FULL_RELOGIN_WINDOW_SECONDS: int = 900

    # session / binding persistence: "memory" or "file"
    STORE_BACKEND: str = "memory"
    STORE_PATH: str = "data/zt_store.json"

    # message the wallet signs (personal_sign)
    CHALLENGE_TEMPLATE: str = "Login to ZeroTrust - nonce:{nonce}"
    CHALLENGE_TTL_SECONDS: int = 300

    # transport conversation cookie; idle conversations forget their wallet
    CLIENT_COOKIE_NAME: str = "zt_client"
    COOKIE_SECURE: bool = False
    CLIENT_IDLE_TTL_SECONDS: int = 3600

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("LEDGER_BACKEND", "STORE_BACKEND")
    @classmethod
    def normalize_backend(cls, v: str) -> str:
        return (v or "").strip().lower()

    @field_validator("LEDGER_RPC_URL", "LEDGER_CONTRACT_ADDRESS", "LEDGER_OPERATOR_KEY")
    @classmethod
    def strip_ledger_params(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator(
        "WALLET_ONLY_WINDOW_SECONDS",
        "FULL_RELOGIN_WINDOW_SECONDS",
        "LEDGER_TX_TIMEOUT_SECONDS",
        "CHALLENGE_TTL_SECONDS",
        "CLIENT_IDLE_TTL_SECONDS",
    )
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of seconds")
        return v

    @field_validator("CHALLENGE_TEMPLATE")
    @classmethod
    def require_nonce_slot(cls, v: str) -> str:
        """
        The signed message is rebuilt server-side from the template, so the
        template must carry the nonce or every challenge would sign the same
        bytes.
        """
        if "{nonce}" not in (v or ""):
            raise ValueError("CHALLENGE_TEMPLATE must contain '{nonce}'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    @property
    def seed_tokens(self) -> list[str]:
        return [p.strip() for p in self.LEDGER_SEED_TOKENS.split(",") if p.strip()]


def validate_settings(s: Settings) -> Settings:
    """
    Cross-field checks. Anything here is unrecoverable: raise at import so the
    process never starts half-configured.
    """
    if s.LEDGER_BACKEND not in ("memory", "web3"):
        raise ValueError(f"unknown LEDGER_BACKEND '{s.LEDGER_BACKEND}' (memory | web3)")

    if s.STORE_BACKEND not in ("memory", "file"):
        raise ValueError(f"unknown STORE_BACKEND '{s.STORE_BACKEND}' (memory | file)")

    if s.LEDGER_BACKEND == "web3":
        missing = [
            name
            for name in ("LEDGER_RPC_URL", "LEDGER_CONTRACT_ADDRESS", "LEDGER_OPERATOR_KEY")
            if not getattr(s, name)
        ]
        if missing:
            raise ValueError(f"LEDGER_BACKEND=web3 requires {', '.join(missing)}")

    # Not fatal: tiering stays deterministic (needFull simply wins earlier).
    if s.FULL_RELOGIN_WINDOW_SECONDS <= s.WALLET_ONLY_WINDOW_SECONDS:
        logger.warning(
            "FULL_RELOGIN_WINDOW_SECONDS (%s) <= WALLET_ONLY_WINDOW_SECONDS (%s); "
            "WalletStale tier will be unreachable",
            s.FULL_RELOGIN_WINDOW_SECONDS,
            s.WALLET_ONLY_WINDOW_SECONDS,
        )

    return s


# Fail fast at import time rather than serving with a broken ledger config
settings = validate_settings(Settings())
