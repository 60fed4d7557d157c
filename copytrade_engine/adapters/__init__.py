"""
Copy-Trade Engine - Exchange Adapters.

Uniform, capability-described access to heterogeneous brokers.
"""

from .base import (
    AdapterCapabilities,
    ExchangeAdapter,
    map_order_status,
)
from .errors import (
    AuthenticationFailed,
    ErrorCategory,
    ExchangeError,
    ExchangeException,
    ExchangeRejected,
    NetworkError,
    RateLimited,
    ReauthorizationRequired,
    RetryEligibility,
    create_network_error,
    create_reauthorization_error,
    create_rejection,
    create_timeout_error,
    map_binance_error,
    map_http_error,
)
from .factory import AdapterConfig, AdapterFactory, ExchangeId
from .http import HttpResponse, RestExchangeAdapter
from .logging_utils import mask_headers, mask_params, mask_value
from .mock import MockConfig, MockExchangeAdapter
from .retry import RetryPolicy
from .symbols import (
    base_asset,
    is_perpetual,
    normalize_symbol,
    split_symbol,
    to_concatenated,
    to_dashed,
)


__all__ = [
    # Base
    "AdapterCapabilities",
    "ExchangeAdapter",
    "map_order_status",
    # Errors
    "AuthenticationFailed",
    "ErrorCategory",
    "ExchangeError",
    "ExchangeException",
    "ExchangeRejected",
    "NetworkError",
    "RateLimited",
    "ReauthorizationRequired",
    "RetryEligibility",
    "create_network_error",
    "create_reauthorization_error",
    "create_rejection",
    "create_timeout_error",
    "map_binance_error",
    "map_http_error",
    # Factory
    "AdapterConfig",
    "AdapterFactory",
    "ExchangeId",
    # Transport
    "HttpResponse",
    "RestExchangeAdapter",
    "RetryPolicy",
    # Logging
    "mask_headers",
    "mask_params",
    "mask_value",
    # Mock
    "MockConfig",
    "MockExchangeAdapter",
    # Symbols
    "base_asset",
    "is_perpetual",
    "normalize_symbol",
    "split_symbol",
    "to_concatenated",
    "to_dashed",
]
