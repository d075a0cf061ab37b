"""
Bundler Configuration Loader

Reads every setting from the environment, optionally seeded from a ``.env``
file (values already in the environment win).

Usage:
    from bundler.config import BundlerConfig

    config = BundlerConfig.load(Path(".env"))
    config.relay.urls
    config.signers.primary.pubkey()
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import base58
from dotenv import load_dotenv
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from bundler.endpoints import DEFAULT_RELAY_URLS
from bundler.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_FILE = Path.cwd() / ".env"
LAMPORTS_PER_SOL = 1_000_000_000
SECRET_MARKERS = ("secret", "key", "password", "token")

T = TypeVar("T")

_MISSING = object()


def _get_env(key: str, default: Any = _MISSING, cast: Type[T] = str) -> T:
    """Get environment variable with type casting.

    No default means the key is required. A value that does not cast is an
    error naming the key, never a silent fallback.
    """
    value = os.environ.get(key)
    if value is not None:
        value = value.strip()

    if value is None or value == "":
        if default is _MISSING:
            raise ConfigError(f"Missing env {key}", key=key)
        return default

    if cast == bool:
        return value.lower() in ("true", "1", "yes", "on")

    if cast == list:
        return [v.strip() for v in value.split(",") if v.strip()]

    try:
        if cast == int:
            return int(value)
        if cast == float:
            return float(value)
        if cast == Decimal:
            return Decimal(value)
    except (ValueError, InvalidOperation) as exc:
        raise ConfigError(f"Invalid {cast.__name__} for {key}: {value!r}", key=key) from exc

    return value


def _get_pubkey(key: str, required: bool = True) -> Optional[Pubkey]:
    raw = _get_env(key) if required else _get_env(key, None)
    if raw is None:
        return None
    try:
        return Pubkey.from_string(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid address for {key}: {raw!r}", key=key) from exc


def _get_keypair(key: str) -> Keypair:
    raw = _get_env(key)
    try:
        return Keypair.from_bytes(base58.b58decode(raw))
    except Exception as exc:
        # never echo the secret itself
        raise ConfigError(f"Invalid base58 secret key in {key}", key=key) from exc


def _require_positive(key: str, value, allow_zero: bool = False):
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ConfigError(f"{key} must be {bound}, got {value}", key=key)
    return value


def sol_to_lamports(amount: Decimal) -> int:
    return int(amount * LAMPORTS_PER_SOL)


@dataclass
class RelayConfig:
    """Block engine endpoints, pacing and tip."""
    urls: List[str] = field(default_factory=lambda: list(DEFAULT_RELAY_URLS))
    secret: str = ""
    min_interval_ms: int = 800
    tip_lamports: int = 2_000_000
    tip_account_override: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RelayConfig":
        override = _get_pubkey("TIP_ACCOUNT_OVERRIDE", required=False)
        return cls(
            urls=_get_env("JITO_URLS", list(DEFAULT_RELAY_URLS), list),
            secret=_get_env("JITO_SECRET"),
            min_interval_ms=_require_positive(
                "JITO_MIN_INTERVAL_MS", _get_env("JITO_MIN_INTERVAL_MS", 800, int), allow_zero=True
            ),
            tip_lamports=_require_positive(
                "TIP_LAMPORTS", _get_env("TIP_LAMPORTS", 2_000_000, int), allow_zero=True
            ),
            tip_account_override=str(override) if override else None,
        )


@dataclass
class RetryConfig:
    """Attempt budget and per-attempt poll window."""
    bundle_retries: int = 6
    poll_timeout_s: float = 12.0
    poll_interval_ms: int = 900

    @classmethod
    def from_env(cls) -> "RetryConfig":
        return cls(
            bundle_retries=_require_positive("BUNDLE_RETRIES", _get_env("BUNDLE_RETRIES", 6, int)),
            poll_timeout_s=_require_positive("POLL_TIMEOUT_S", _get_env("POLL_TIMEOUT_S", 12.0, float)),
            poll_interval_ms=_require_positive("POLL_INTERVAL_MS", _get_env("POLL_INTERVAL_MS", 900, int)),
        )


@dataclass
class BuyConfig:
    """What each leg buys and how much it may spend."""
    rpc_url: str = ""
    mint: str = ""
    amount_out_ui: Decimal = Decimal("0")
    max_sol: Decimal = Decimal("0")
    pool_snapshot_path: str = ""
    slippage_bps: int = 0
    cu_limit: int = 600_000
    cu_price_micro: int = 0
    share_fee_bps: int = 0
    share_fee_receiver: Optional[str] = None

    @classmethod
    def from_env(cls) -> "BuyConfig":
        receiver = _get_pubkey("SHARE_FEE_RECEIVER", required=False)
        return cls(
            rpc_url=_get_env("RPC_URL"),
            mint=str(_get_pubkey("MINT")),
            amount_out_ui=_require_positive("AMOUNT_OUT_UI", _get_env("AMOUNT_OUT_UI", cast=Decimal)),
            max_sol=_require_positive("MAX_SOL", _get_env("MAX_SOL", cast=Decimal)),
            pool_snapshot_path=_get_env("POOL_SNAPSHOT_PATH"),
            slippage_bps=_require_positive("SLIPPAGE_BPS", _get_env("SLIPPAGE_BPS", cast=int), allow_zero=True),
            cu_limit=_require_positive("CU_LIMIT", _get_env("CU_LIMIT", 600_000, int)),
            cu_price_micro=_require_positive(
                "BUY_CU_PRICE_MICRO", _get_env("BUY_CU_PRICE_MICRO", 0, int), allow_zero=True
            ),
            share_fee_bps=_require_positive("SHARE_FEE_BPS", _get_env("SHARE_FEE_BPS", 0, int), allow_zero=True),
            share_fee_receiver=str(receiver) if receiver else None,
        )

    @property
    def max_lamports_in(self) -> int:
        return sol_to_lamports(self.max_sol)


@dataclass
class Signers:
    primary: Keypair
    tip_payer: Keypair

    @classmethod
    def from_env(cls) -> "Signers":
        return cls(primary=_get_keypair("SNIPER1_SECRET_KEY"), tip_payer=_get_keypair("SNIPER2_SECRET_KEY"))

    def to_dict(self) -> Dict[str, str]:
        return {"primary": str(self.primary.pubkey()), "tip_payer": str(self.tip_payer.pubkey())}


@dataclass
class LoggingSettings:
    level: str = "INFO"
    json: bool = False

    @classmethod
    def from_env(cls) -> "LoggingSettings":
        return cls(level=_get_env("LOG_LEVEL", "INFO").upper(), json=_get_env("LOG_JSON", False, bool))


@dataclass
class BundlerConfig:
    """Complete run configuration."""
    relay: RelayConfig
    retry: RetryConfig
    buy: BuyConfig
    signers: Signers
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def load(cls, env_path: Optional[Path] = ENV_FILE) -> "BundlerConfig":
        """Load configuration from the environment (seeded from ``env_path``)."""
        env_loaded = False
        if env_path is not None and Path(env_path).exists():
            env_loaded = load_dotenv(env_path, override=False)

        config = cls(
            relay=RelayConfig.from_env(),
            retry=RetryConfig.from_env(),
            buy=BuyConfig.from_env(),
            signers=Signers.from_env(),
            logging=LoggingSettings.from_env(),
        )
        if not config.relay.urls:
            raise ConfigError("JITO_URLS resolved to an empty list", key="JITO_URLS")

        logger.debug(f"Configuration loaded (.env: {env_loaded})")
        return config

    @property
    def effective_poll_interval_ms(self) -> int:
        """Poll interval never undercuts the relay call floor."""
        return max(self.retry.poll_interval_ms, self.relay.min_interval_ms)

    def to_dict(self, hide_secrets: bool = True) -> Dict[str, Any]:
        data = {
            "relay": asdict(self.relay),
            "retry": asdict(self.retry),
            "buy": asdict(self.buy),
            "signers": self.signers.to_dict(),
            "logging": asdict(self.logging),
        }

        if hide_secrets:
            for section in data.values():
                for key in list(section.keys()):
                    if any(s in key.lower() for s in SECRET_MARKERS):
                        value = section[key]
                        if value:
                            section[key] = f"{value[:4]}...{value[-4:]}" if len(str(value)) > 8 else "****"

        return data
