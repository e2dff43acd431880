"""Runtime configuration loaded from the environment.

Required:
- STRIPE_SECRET_KEY (fallback STRIPE_API_KEY)
- STRIPE_WEBHOOK_SECRET
- STRIPE_PRICE_ID
- MONGO_URL
- DB_NAME

Missing required values raise ConfigurationError at startup so the API never
serves with a half-configured payment stack.
"""
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigurationError

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

REQUIRED_SETTINGS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_PRICE_ID",
    "MONGO_URL",
    "DB_NAME",
)


def _bool_env(raw: Optional[str], default: bool) -> bool:
    value = (raw or "").strip().lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number")


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer")


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_price_id: str
    mongo_url: str
    db_name: str
    stripe_api_timeout_sec: float = 8.0
    stripe_max_network_retries: int = 1
    stripe_webhook_tolerance_sec: int = 300
    mongo_timeout_ms: int = 5000
    local_trial_cache_enabled: bool = True
    local_trial_cache_max_entries: int = 10_000
    cors_origins: Tuple[str, ...] = ("*",)
    environment: str = "development"
    product_name: str = "BookfoldAR Full Access"
    product_price_display: str = "$24.99"
    product_description: str = "One-time payment for lifetime access to all AR features"

    @property
    def stripe_mode(self) -> str:
        """'test' or 'live' derived from the secret key prefix."""
        if self.stripe_secret_key.startswith("sk_live_") or self.stripe_secret_key.startswith("rk_live_"):
            return "live"
        if self.stripe_secret_key.startswith("sk_test_") or self.stripe_secret_key.startswith("rk_test_"):
            return "test"
        return "unknown"


def cors_origins_from_env(environ: Optional[Mapping[str, str]] = None) -> Tuple[str, ...]:
    """Comma separated CORS_ORIGINS, whitespace trimmed. Defaults to "*"."""
    env = os.environ if environ is None else environ
    origins = tuple(
        origin.strip()
        for origin in (env.get("CORS_ORIGINS") or "*").split(",")
        if origin.strip()
    )
    return origins or ("*",)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from ``environ`` (defaults to os.environ).

    Raises ConfigurationError listing the names (never the values) of any
    missing required variables.
    """
    env = os.environ if environ is None else environ

    values = {
        "STRIPE_SECRET_KEY": (env.get("STRIPE_SECRET_KEY") or env.get("STRIPE_API_KEY") or "").strip(),
        "STRIPE_WEBHOOK_SECRET": (env.get("STRIPE_WEBHOOK_SECRET") or "").strip(),
        "STRIPE_PRICE_ID": (env.get("STRIPE_PRICE_ID") or "").strip(),
        "MONGO_URL": (env.get("MONGO_URL") or "").strip(),
        "DB_NAME": (env.get("DB_NAME") or "").strip(),
    }
    missing = [name for name in REQUIRED_SETTINGS if not values[name]]
    if missing:
        logger.error("Missing required configuration: %s", ", ".join(missing))
        raise ConfigurationError(
            "Missing required configuration: " + ", ".join(missing),
            missing=missing,
        )

    return Settings(
        stripe_secret_key=values["STRIPE_SECRET_KEY"],
        stripe_webhook_secret=values["STRIPE_WEBHOOK_SECRET"],
        stripe_price_id=values["STRIPE_PRICE_ID"],
        mongo_url=values["MONGO_URL"],
        db_name=values["DB_NAME"],
        stripe_api_timeout_sec=_float_env(env, "STRIPE_API_TIMEOUT_SEC", 8.0),
        stripe_max_network_retries=_int_env(env, "STRIPE_MAX_NETWORK_RETRIES", 1),
        stripe_webhook_tolerance_sec=_int_env(env, "STRIPE_WEBHOOK_TOLERANCE_SEC", 300),
        mongo_timeout_ms=_int_env(env, "MONGO_TIMEOUT_MS", 5000),
        local_trial_cache_enabled=_bool_env(env.get("LOCAL_TRIAL_CACHE_ENABLED"), True),
        local_trial_cache_max_entries=_int_env(env, "LOCAL_TRIAL_CACHE_MAX_ENTRIES", 10_000),
        cors_origins=cors_origins_from_env(env),
        environment=(env.get("ENVIRONMENT") or "development").strip(),
        product_name=(env.get("PRODUCT_NAME") or Settings.product_name).strip(),
        product_price_display=(env.get("PRODUCT_PRICE_DISPLAY") or Settings.product_price_display).strip(),
        product_description=(env.get("PRODUCT_DESCRIPTION") or Settings.product_description).strip(),
    )
