#!/usr/bin/env python3
"""
Configuration constants and environment settings for the REST function.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

# Store constants
ACCOUNT_KEY_PREFIX = "account-"
ACCOUNT_TTL_MINUTES = 10080  # 7 days
MAX_VALUE_BYTES = 32 * 1024  # 32KB per entry

# Default values
DEFAULT_PORT = 5000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_STORE_TIMEOUT_SECONDS = 5.0
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_PUT_MAX_ATTEMPTS = 3
DEFAULT_KITTY_URL = "http://thecatapi.com/api/images/get?results_per_page=1"

DEFAULT_KV_TABLE = "kv_entries"
DEFAULT_KV_COUNTER_TABLE = "kv_counters"
DEFAULT_KV_COUNTER_RPC = "kv_incr_counter"

# CORS headers sent on every response
CORS_ALLOW_ORIGIN = "*"
CORS_ALLOW_HEADERS = "Origin, X-Requested-With, Content-Type, Accept"
CORS_ALLOW_METHODS = "GET, POST, OPTIONS, PUT, DELETE"

INDEX_HTML = "<html>Hello!!</html>"

# Error messages (user-friendly, no internal details)
ERROR_MESSAGES = {
    "store_unavailable": "Storage service unavailable",
    "upstream_timeout": "Upstream request timed out",
    "upstream_failed": "Upstream request failed",
    "secret_missing": "Secret not configured",
    "conflict": "Concurrent update, retry",
    "internal": "Internal server error",
}

# Logging configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

TRUTHY_EXCLUDED = ("", "0", "false", "no", "off")


def _clean(value):
    """Normalize config values by stripping whitespace and converting None to empty string."""
    return value.strip() if isinstance(value, str) else ""


def _env_flag(name: str, default: str) -> bool:
    return _clean(os.getenv(name, default)).lower() == "true"


def _env_number(name: str, default, cast=float):
    raw = _clean(os.getenv(name))
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the dispatcher and its clients"""
    demo_mode: bool = True
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    kv_table: str = DEFAULT_KV_TABLE
    kv_counter_table: str = DEFAULT_KV_COUNTER_TABLE
    kv_counter_rpc: str = DEFAULT_KV_COUNTER_RPC
    store_timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    kitty_url: str = DEFAULT_KITTY_URL
    kitty_api_key_secret: str = ""
    api_auth_token: str = ""
    put_max_attempts: int = DEFAULT_PUT_MAX_ATTEMPTS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    debug: bool = False

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_auth_token)


def load_settings() -> Settings:
    """Load settings from environment variables (and .env, if present).

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    put_max_attempts = _env_number("PUT_MAX_ATTEMPTS", DEFAULT_PUT_MAX_ATTEMPTS, int)
    if put_max_attempts < 1:
        raise ValueError(f"Invalid value for PUT_MAX_ATTEMPTS: {put_max_attempts!r}")

    return Settings(
        demo_mode=_env_flag("DEMO_MODE", "true"),
        supabase_url=_clean(os.getenv("SUPABASE_URL")),
        supabase_service_role_key=_clean(os.getenv("SUPABASE_SERVICE_ROLE_KEY")),
        kv_table=_clean(os.getenv("KV_TABLE")) or DEFAULT_KV_TABLE,
        kv_counter_table=_clean(os.getenv("KV_COUNTER_TABLE")) or DEFAULT_KV_COUNTER_TABLE,
        kv_counter_rpc=_clean(os.getenv("KV_COUNTER_RPC")) or DEFAULT_KV_COUNTER_RPC,
        store_timeout_seconds=_env_number("STORE_TIMEOUT_SECONDS", DEFAULT_STORE_TIMEOUT_SECONDS),
        fetch_timeout_seconds=_env_number("FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS),
        kitty_url=_clean(os.getenv("KITTY_URL")) or DEFAULT_KITTY_URL,
        kitty_api_key_secret=_clean(os.getenv("KITTY_API_KEY_SECRET")),
        api_auth_token=_clean(os.getenv("API_AUTH_TOKEN")),
        put_max_attempts=put_max_attempts,
        host=_clean(os.getenv("HOST")) or DEFAULT_HOST,
        port=_env_number("PORT", DEFAULT_PORT, int),
        debug=_env_flag("DEBUG", "false"),
    )
