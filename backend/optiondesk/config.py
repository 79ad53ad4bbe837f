"""Runtime configuration read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

ANGEL_BASE_URL = "https://apiconnect.angelone.in"
SCRIP_MASTER_URL = (
    "https://margincalculator.angelbroking.com/OpenAPI_File/files/OpenAPIScripMaster.json"
)


def _env_str(env: Mapping[str, str], key: str, default: str = "") -> str:
    return env.get(key, default).strip()


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from e


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got {raw!r}") from e


@dataclass(frozen=True, slots=True)
class Settings:
    """Everything the composition root needs to wire the app.

    Broker credentials come from ``ANGEL_*`` / ``TOTP_SECRET``; tunables use the
    ``OPTIONDESK_`` prefix. An empty ``angel_api_key`` selects the simulator.
    """

    angel_api_key: str = ""
    angel_client_code: str = ""
    totp_secret: str = ""
    base_url: str = ANGEL_BASE_URL
    scrip_master_url: str = SCRIP_MASTER_URL

    http_timeout: float = 15.0
    scrip_master_timeout: float = 20.0
    scrip_master_ttl: float = 24 * 60 * 60
    token_ttl: float = 28 * 60 * 60
    max_refresh_attempts: int = 3

    underlying: str = "NIFTY"
    spot_exchange: str = "NSE"
    spot_token: str = "26000"
    strike_interval: int = 50
    strike_window: int = 10
    max_tokens_per_quote: int = 50
    expiry_weekday: int = 3  # Thursday

    market_interval: float = 5.0
    chain_interval: float = 30.0
    # Connections silent this long are closed; 0 keeps them forever
    client_idle_timeout: float = 0.0

    db_path: str = "data/options.db"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3000

    @property
    def simulated(self) -> bool:
        return not self.angel_api_key

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env
        return cls(
            angel_api_key=_env_str(env, "ANGEL_API_KEY"),
            angel_client_code=_env_str(env, "ANGEL_CLIENT_CODE"),
            totp_secret=_env_str(env, "TOTP_SECRET"),
            base_url=_env_str(env, "ANGEL_BASE_URL", ANGEL_BASE_URL),
            scrip_master_url=_env_str(env, "OPTIONDESK_SCRIP_MASTER_URL", SCRIP_MASTER_URL),
            http_timeout=_env_float(env, "OPTIONDESK_HTTP_TIMEOUT", 15.0),
            scrip_master_timeout=_env_float(env, "OPTIONDESK_SCRIP_MASTER_TIMEOUT", 20.0),
            scrip_master_ttl=_env_float(env, "OPTIONDESK_SCRIP_MASTER_TTL", 24 * 60 * 60),
            token_ttl=_env_float(env, "OPTIONDESK_TOKEN_TTL", 28 * 60 * 60),
            max_refresh_attempts=_env_int(env, "OPTIONDESK_MAX_REFRESH_ATTEMPTS", 3),
            underlying=_env_str(env, "OPTIONDESK_UNDERLYING", "NIFTY").upper(),
            spot_exchange=_env_str(env, "OPTIONDESK_SPOT_EXCHANGE", "NSE").upper(),
            spot_token=_env_str(env, "OPTIONDESK_SPOT_TOKEN", "26000"),
            strike_interval=_env_int(env, "OPTIONDESK_STRIKE_INTERVAL", 50),
            strike_window=_env_int(env, "OPTIONDESK_STRIKE_WINDOW", 10),
            max_tokens_per_quote=_env_int(env, "OPTIONDESK_MAX_TOKENS_PER_QUOTE", 50),
            expiry_weekday=_env_int(env, "OPTIONDESK_EXPIRY_WEEKDAY", 3),
            market_interval=_env_float(env, "OPTIONDESK_MARKET_INTERVAL", 5.0),
            chain_interval=_env_float(env, "OPTIONDESK_CHAIN_INTERVAL", 30.0),
            client_idle_timeout=_env_float(env, "OPTIONDESK_CLIENT_IDLE_TIMEOUT", 0.0),
            db_path=_env_str(env, "OPTIONDESK_DB_PATH", "data/options.db"),
            log_level=_env_str(env, "OPTIONDESK_LOG_LEVEL", "INFO").upper(),
            host=_env_str(env, "HOST", "0.0.0.0"),
            port=_env_int(env, "PORT", 3000),
        )
