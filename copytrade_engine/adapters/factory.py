"""
Exchange Adapter Factory.

============================================================
PURPOSE
============================================================
Factory for creating exchange adapter instances.

FEATURES:
- Centralized adapter creation
- Credential to adapter configuration mapping
- Environment-based defaults
- Adapter registry for extension (tests register mocks here)

============================================================
USAGE
============================================================
```python
adapter = AdapterFactory.create("binance", AdapterConfig(api_key="...", api_secret="..."))

adapter = AdapterFactory.create_for_credential(credential, retry_policy=policy)
```

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..config import TimeoutConfig
from ..types import Credential
from .base import ExchangeAdapter
from .retry import RetryPolicy
from .tradestation import TokenRotatedCallback


logger = logging.getLogger(__name__)


# ============================================================
# EXCHANGE IDENTIFIERS
# ============================================================

class ExchangeId(Enum):
    """Supported exchange identifiers."""

    BINANCE = "binance"
    ROBINHOOD = "robinhood"
    ETRADE = "etrade"
    TRADESTATION = "tradestation"
    CAPITAL = "capital"
    MOCK = "mock"


# ============================================================
# ADAPTER CONFIGURATION
# ============================================================

@dataclass
class AdapterConfig:
    """
    Configuration for exchange adapter.

    A superset of what the individual brokers need; each adapter
    reads only its own fields.
    """

    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    passphrase: Optional[str] = None

    # OAuth
    access_token: Optional[str] = None
    access_token_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    token_issued_at: Optional[datetime] = None
    pin: Optional[str] = None

    # Account selection / login
    account_id: Optional[str] = None
    identifier: Optional[str] = None

    sandbox: bool = False

    options: Dict[str, Any] = field(default_factory=dict)
    """Exchange-specific extras."""

    @classmethod
    def from_env(cls, exchange_id: str, sandbox: bool = False) -> "AdapterConfig":
        """Create config from <EXCHANGE>_* environment variables."""
        prefix = exchange_id.upper()
        return cls(
            api_key=os.environ.get(f"{prefix}_API_KEY"),
            api_secret=os.environ.get(f"{prefix}_API_SECRET"),
            passphrase=os.environ.get(f"{prefix}_PASSPHRASE"),
            access_token=os.environ.get(f"{prefix}_ACCESS_TOKEN"),
            access_token_secret=os.environ.get(f"{prefix}_ACCESS_TOKEN_SECRET"),
            refresh_token=os.environ.get(f"{prefix}_REFRESH_TOKEN"),
            account_id=os.environ.get(f"{prefix}_ACCOUNT_ID"),
            identifier=os.environ.get(f"{prefix}_IDENTIFIER"),
            pin=os.environ.get(f"{prefix}_PIN"),
            sandbox=sandbox,
        )

    @classmethod
    def from_credential(cls, credential: Credential) -> "AdapterConfig":
        extra = dict(credential.extra)
        return cls(
            api_key=credential.api_key,
            api_secret=credential.api_secret,
            passphrase=credential.passphrase,
            access_token=credential.access_token,
            access_token_secret=credential.access_token_secret,
            refresh_token=credential.refresh_token,
            token_issued_at=credential.token_issued_at,
            pin=credential.pin,
            account_id=credential.account_id,
            identifier=extra.pop("identifier", None),
            sandbox=credential.is_sandbox,
            options=extra,
        )


AdapterCreator = Callable[[AdapterConfig], ExchangeAdapter]


# ============================================================
# ADAPTER FACTORY
# ============================================================

class AdapterFactory:
    """
    Factory for creating exchange adapters.
    """

    # Custom creation functions
    _creators: Dict[str, AdapterCreator] = {}

    @classmethod
    def register(cls, exchange_id: str, creator: AdapterCreator) -> None:
        cls._creators[exchange_id.lower()] = creator

    @classmethod
    def unregister(cls, exchange_id: str) -> None:
        cls._creators.pop(exchange_id.lower(), None)

    @classmethod
    def create(
        cls,
        exchange_id: str,
        config: Optional[AdapterConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        on_token_rotated: Optional[TokenRotatedCallback] = None,
    ) -> ExchangeAdapter:
        """
        Create an exchange adapter.

        Raises:
            ValueError: If exchange not supported or required credentials are missing
        """
        exchange_id = exchange_id.lower()
        if config is None:
            config = AdapterConfig.from_env(exchange_id)

        if exchange_id in cls._creators:
            return cls._creators[exchange_id](config)

        return cls._create_default(exchange_id, config, retry_policy, timeout_config, on_token_rotated)

    @classmethod
    def create_for_credential(
        cls,
        credential: Credential,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_config: Optional[TimeoutConfig] = None,
        on_token_rotated: Optional[TokenRotatedCallback] = None,
    ) -> ExchangeAdapter:
        return cls.create(
            credential.exchange_id,
            AdapterConfig.from_credential(credential),
            retry_policy=retry_policy,
            timeout_config=timeout_config,
            on_token_rotated=on_token_rotated,
        )

    @classmethod
    def _create_default(
        cls,
        exchange_id: str,
        config: AdapterConfig,
        retry_policy: Optional[RetryPolicy],
        timeout_config: Optional[TimeoutConfig],
        on_token_rotated: Optional[TokenRotatedCallback],
    ) -> ExchangeAdapter:
        """Create adapter using default imports."""
        common = {"retry_policy": retry_policy, "timeout_config": timeout_config}

        if exchange_id == ExchangeId.BINANCE.value:
            from .binance import BinanceAdapter
            _require(exchange_id, config, "api_key", "api_secret")
            return BinanceAdapter(config.api_key, config.api_secret, testnet=config.sandbox, **common)

        elif exchange_id == ExchangeId.ROBINHOOD.value:
            from .robinhood import RobinhoodAdapter
            _require(exchange_id, config, "api_key", "api_secret")
            return RobinhoodAdapter(config.api_key, config.api_secret, **common)

        elif exchange_id == ExchangeId.ETRADE.value:
            from .etrade import ETradeAdapter
            _require(exchange_id, config, "api_key", "api_secret", "access_token", "access_token_secret")
            return ETradeAdapter(
                consumer_key=config.api_key,
                consumer_secret=config.api_secret,
                access_token=config.access_token,
                access_token_secret=config.access_token_secret,
                account_id_key=config.account_id,
                token_issued_at=config.token_issued_at,
                sandbox=config.sandbox,
                **common,
            )

        elif exchange_id == ExchangeId.TRADESTATION.value:
            from .tradestation import TradeStationAdapter
            _require(exchange_id, config, "api_key", "api_secret", "refresh_token")
            return TradeStationAdapter(
                client_id=config.api_key,
                client_secret=config.api_secret,
                refresh_token=config.refresh_token,
                account_id=config.account_id,
                pin=config.pin,
                sandbox=config.sandbox,
                on_token_rotated=on_token_rotated,
                **common,
            )

        elif exchange_id == ExchangeId.CAPITAL.value:
            from .capital import CapitalAdapter
            identifier = config.identifier or config.account_id
            password = config.api_secret or config.passphrase
            if not (config.api_key and identifier and password):
                raise ValueError("capital requires api_key, identifier and password")
            return CapitalAdapter(
                api_key=config.api_key,
                identifier=identifier,
                password=password,
                account_id=config.account_id if config.identifier else None,
                demo=config.sandbox,
                **common,
            )

        elif exchange_id == ExchangeId.MOCK.value:
            from .mock import MockExchangeAdapter
            return MockExchangeAdapter()

        raise ValueError(f"Unsupported exchange: {exchange_id}")

    @classmethod
    def list_supported(cls) -> List[str]:
        """List supported exchanges."""
        builtin = [e.value for e in ExchangeId]
        return sorted(set(builtin + list(cls._creators)))


def _require(exchange_id: str, config: AdapterConfig, *fields: str) -> None:
    missing = [name for name in fields if not getattr(config, name)]
    if missing:
        raise ValueError(f"{exchange_id} requires {', '.join(missing)}")
