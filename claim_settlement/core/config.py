"""
Settlement settings. Everything comes from the environment (.env via python-dotenv).
Numeric knobs are clamped so a bad env value can't disable a safety limit.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# config.py is in claim_settlement/core/, so go up 3 levels to project root
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(_BASE_DIR / ".env")

DB_SCHEMA = "rewards"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.environ.get(name)
    value = default if raw is None or not raw.strip() else int(raw)
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def _env_float(name: str, default: float, min_value: float | None = None) -> float:
    raw = os.environ.get(name)
    value = default if raw is None or not raw.strip() else float(raw)
    if min_value is not None:
        value = max(min_value, value)
    return value


@dataclass(frozen=True)
class Settings:
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None

    # Ledger
    rpc_url: str = "https://worldchain-sepolia.g.alchemy.com/public"
    chain_id: int = 4801
    admin_private_key: str | None = None
    admin_wallet_address: str | None = None
    dispatcher_address: str = "0xeafbbc700f25d5127721bb28886aa541319e72e0"
    token_decimals: int = 18

    # Batching
    batch_size: int = 50
    batch_concurrency: int = 2
    max_retry_count: int = 3
    retry_base_delay_seconds: float = 600.0
    processing_timeout_hours: float = 1.0
    gas_per_recipient: int = 60_000
    enforce_min_batch_size: bool = False
    min_batch_threshold: int = 100
    cycle_deadline_seconds: float = 900.0
    dry_run: bool = False

    # Confirmation polling
    confirmation_initial_interval_seconds: float = 10.0
    confirmation_max_attempts: int = 5
    confirmation_wait_timeout_seconds: float = 120.0

    # Reconciliation
    reconcile_lookback_blocks: int = 1000
    reconcile_claim_limit: int = 200
    nonce_abandon_after_minutes: int = 60

    # Claim intake
    max_pending_claims: int = 3

    # HTTP / auth
    cron_secret: str | None = None
    secret_key: str = "dev-secret-change-me"
    session_cookie: str = "claims_session"
    session_ttl_seconds: int = 7200

    # Notifications
    notification_url: str = "https://developer.worldcoin.org/api/v2/minikit/send-notification"
    notification_api_key: str | None = None
    notification_app_id: str | None = None


def load_settings() -> Settings:
    return Settings(
        app_env=os.environ.get("APP_ENV", "dev").strip().lower(),
        log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
        database_url=os.getenv("DATABASE_URL"),
        rpc_url=os.environ.get("WEB3_PROVIDER_URL", Settings.rpc_url),
        chain_id=_env_int("CHAIN_ID", 4801, min_value=1),
        admin_private_key=os.getenv("ADMIN_PRIVATE_KEY") or None,
        admin_wallet_address=os.getenv("ADMIN_WALLET_ADDRESS") or None,
        dispatcher_address=os.environ.get("TOKEN_DISPATCHER_ADDRESS", Settings.dispatcher_address).strip(),
        token_decimals=_env_int("TOKEN_DECIMALS", 18, min_value=0),
        batch_size=_env_int("BATCH_SIZE", 50, min_value=1),
        batch_concurrency=_env_int("BATCH_CONCURRENCY", 2, min_value=1, max_value=5),
        max_retry_count=_env_int("MAX_RETRY_COUNT", 3, min_value=0),
        retry_base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 600.0, min_value=0.0),
        processing_timeout_hours=_env_float("PROCESSING_TIMEOUT_HOURS", 1.0, min_value=0.0),
        gas_per_recipient=_env_int("GAS_PER_RECIPIENT", 60_000, min_value=21_000),
        enforce_min_batch_size=_env_bool("ENFORCE_MIN_BATCH_SIZE", False),
        min_batch_threshold=_env_int("MIN_BATCH_THRESHOLD", 100, min_value=1),
        cycle_deadline_seconds=_env_float("CYCLE_DEADLINE_SECONDS", 900.0, min_value=1.0),
        dry_run=_env_bool("DRY_RUN", False),
        confirmation_initial_interval_seconds=_env_float("CONFIRMATION_INITIAL_INTERVAL_SECONDS", 10.0, min_value=0.0),
        confirmation_max_attempts=_env_int("CONFIRMATION_MAX_ATTEMPTS", 5, min_value=1),
        confirmation_wait_timeout_seconds=_env_float("CONFIRMATION_WAIT_TIMEOUT_SECONDS", 120.0, min_value=0.0),
        reconcile_lookback_blocks=_env_int("RECONCILE_LOOKBACK_BLOCKS", 1000, min_value=1),
        reconcile_claim_limit=_env_int("RECONCILE_CLAIM_LIMIT", 200, min_value=1),
        nonce_abandon_after_minutes=_env_int("NONCE_ABANDON_AFTER_MINUTES", 60, min_value=1),
        max_pending_claims=_env_int("MAX_PENDING_CLAIMS", 3, min_value=1),
        cron_secret=os.getenv("CRON_SECRET") or None,
        secret_key=os.getenv("SECRET_KEY", "dev-secret-change-me"),
        session_cookie=os.getenv("SESSION_COOKIE_NAME", "claims_session"),
        session_ttl_seconds=_env_int("SESSION_TTL_MINUTES", 120, min_value=1) * 60,
        notification_url=os.environ.get("NOTIFICATION_URL", Settings.notification_url),
        notification_api_key=os.getenv("NOTIFICATION_API_KEY") or None,
        notification_app_id=os.getenv("NOTIFICATION_APP_ID") or None,
    )


settings = load_settings()
