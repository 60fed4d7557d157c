"""
Copy-Trade Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the execution and copy-trading engine.

Values come from dataclass defaults, optionally overridden by
environment variables (a local .env file is loaded first).

CRITICAL CONSTRAINTS:
- Bounded retries, no 4xx retries
- Margin buffer always applied before an open
- Followers are isolated from each other

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from dotenv import load_dotenv


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_decimal(name: str, default: Decimal) -> Decimal:
    value = os.getenv(name)
    return Decimal(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration shared by every adapter.

    SAFETY: Bounded attempts, exponential backoff, 4xx never retried.
    """

    max_attempts: int = 3
    """Total attempts including the first one."""

    base_delay_seconds: float = 1.0
    """Delay before retry n is base_delay * 2^n."""

    max_delay_seconds: float = 30.0
    """Upper bound for a single backoff delay."""


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """HTTP timeouts applied to every adapter session."""

    connection_timeout_seconds: float = 5.0
    """Connection timeout."""

    total_timeout_seconds: float = 30.0
    """Total request timeout."""


# ============================================================
# EXECUTOR CONFIGURATION
# ============================================================

@dataclass
class ExecutorConfig:
    """
    Trade executor configuration.
    """

    margin_buffer_percent: Decimal = Decimal("20")
    """Share of available margin that must remain free after an open."""

    reversal_settle_seconds: float = 1.0
    """Pause between the close and open legs of a reversal."""

    default_quantity_precision: int = 3
    """Decimal places used when the adapter declares none."""

    default_price_precision: int = 2
    """Decimal places for bracket prices when the adapter declares none."""


# ============================================================
# CREDENTIAL CACHE CONFIGURATION
# ============================================================

@dataclass
class CredentialCacheConfig:
    ttl_seconds: float = 30.0
    """How long a resolved credential is served from memory."""

    exchange_extras: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    """Per-exchange default extra configuration merged into credentials."""


# ============================================================
# RECONCILER CONFIGURATION
# ============================================================

@dataclass
class ReconcilerConfig:
    """
    Position reconciler configuration.
    """

    enabled: bool = True
    """Whether the background loop runs."""

    interval_seconds: float = 30.0
    """Seconds between price/P&L refresh iterations."""

    sync_on_start: bool = True
    """Re-derive tracked positions from the exchange at startup."""


# ============================================================
# FAN-OUT CONFIGURATION
# ============================================================

@dataclass
class FanOutConfig:
    """
    Copy-trading fan-out configuration.
    """

    max_concurrency: int = 10
    """Followers processed at the same time."""

    margin_buffer_percent: Decimal = Decimal("20")
    """Free margin each follower must keep after a copied open."""

    default_override_fee_percent: Decimal = Decimal("15")
    """Fee charged on new high-water-mark profit when the strategy sets none."""

    platform_fee_share_percent: Decimal = Decimal("40")
    """Platform share of the override fee. The leader receives the rest."""


# ============================================================
# NOTIFICATION CONFIGURATION
# ============================================================

@dataclass
class NotificationConfig:
    """
    Notification configuration.
    """

    telegram_enabled: bool = True
    """Whether Telegram delivery is enabled."""

    telegram_bot_token: Optional[str] = None
    """Bot token, usually loaded from TELEGRAM_BOT_TOKEN."""

    telegram_chat_id: Optional[str] = None
    """Target chat, usually loaded from TELEGRAM_CHAT_ID."""

    min_interval_seconds: float = 1.0
    """Minimum interval between two Telegram messages."""

    min_severity: str = "INFO"
    """Lowest severity sent to Telegram: INFO, WARNING, ERROR or CRITICAL."""

    notify_on_open: bool = True
    notify_on_close: bool = True
    notify_on_rejection: bool = True


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    url: str = "sqlite+aiosqlite:///./copytrade.db"
    """Async SQLAlchemy URL."""

    echo: bool = False
    """Log SQL statements."""

    pool_size: int = 10
    """Connection pool size (ignored for SQLite)."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class EngineConfig:
    """
    Master configuration for the engine.
    """

    retry: RetryConfig = field(default_factory=RetryConfig)
    """Retry configuration."""

    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    """Timeout configuration."""

    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    """Executor configuration."""

    credentials: CredentialCacheConfig = field(default_factory=CredentialCacheConfig)
    """Credential cache configuration."""

    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    """Reconciler configuration."""

    fan_out: FanOutConfig = field(default_factory=FanOutConfig)
    """Fan-out configuration."""

    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    """Notification configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    """Database configuration."""

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build configuration from environment variables (and .env)."""
        load_dotenv()

        return cls(
            retry=RetryConfig(
                max_attempts=_env_int("COPYTRADE_RETRY_MAX_ATTEMPTS", 3),
                base_delay_seconds=_env_float("COPYTRADE_RETRY_BASE_DELAY", 1.0),
            ),
            timeout=TimeoutConfig(
                connection_timeout_seconds=_env_float("COPYTRADE_CONNECT_TIMEOUT", 5.0),
                total_timeout_seconds=_env_float("COPYTRADE_TOTAL_TIMEOUT", 30.0),
            ),
            executor=ExecutorConfig(
                margin_buffer_percent=_env_decimal("COPYTRADE_MARGIN_BUFFER_PERCENT", Decimal("20")),
                reversal_settle_seconds=_env_float("COPYTRADE_REVERSAL_SETTLE_SECONDS", 1.0),
            ),
            credentials=CredentialCacheConfig(
                ttl_seconds=_env_float("COPYTRADE_CREDENTIAL_TTL", 30.0),
            ),
            reconciler=ReconcilerConfig(
                enabled=_env_bool("COPYTRADE_RECONCILER_ENABLED", True),
                interval_seconds=_env_float("COPYTRADE_RECONCILE_INTERVAL", 30.0),
            ),
            fan_out=FanOutConfig(
                max_concurrency=_env_int("COPYTRADE_FANOUT_CONCURRENCY", 10),
                margin_buffer_percent=_env_decimal("COPYTRADE_FOLLOWER_MARGIN_BUFFER", Decimal("20")),
                default_override_fee_percent=_env_decimal("COPYTRADE_OVERRIDE_FEE_PERCENT", Decimal("15")),
            ),
            notifications=NotificationConfig(
                telegram_enabled=_env_bool("TELEGRAM_ENABLED", True),
                telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
                telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
                min_severity=os.getenv("TELEGRAM_MIN_SEVERITY", "INFO").upper(),
            ),
            database=DatabaseConfig(
                url=os.getenv("DATABASE_URL", DatabaseConfig.url),
                echo=_env_bool("DATABASE_ECHO", False),
            ),
        )

    @classmethod
    def for_testing(cls) -> "EngineConfig":
        """Get configuration for testing."""
        return cls(
            retry=RetryConfig(max_attempts=3, base_delay_seconds=0.0),
            executor=ExecutorConfig(reversal_settle_seconds=0.0),
            credentials=CredentialCacheConfig(ttl_seconds=30.0),
            reconciler=ReconcilerConfig(enabled=False, sync_on_start=False),
            notifications=NotificationConfig(telegram_enabled=False),
            database=DatabaseConfig(url="sqlite+aiosqlite:///:memory:"),
        )

    @classmethod
    def for_production(cls) -> "EngineConfig":
        """Get configuration for production."""
        config = cls.from_env()
        config.reconciler.enabled = True
        config.reconciler.sync_on_start = True
        return config
