"""
Exchange Adapter - Error Handling and Mapping.

============================================================
PURPOSE
============================================================
Standardized exchange-side errors for every adapter:
- Unified error taxonomy across brokers
- HTTP status and exchange code mapping
- Retry eligibility classification
- Error context preservation

============================================================
ERROR CLASSES
============================================================
ExchangeException          base wrapper carrying an ExchangeError
  NetworkError             connection failure or timeout (retry)
  RateLimited              HTTP 429 (backoff)
  ExchangeRejected         definitive 4xx rejection (no retry)
  AuthenticationFailed     credentials refused (no retry)
  ReauthorizationRequired  user must re-authorize (no retry)

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    REAUTHORIZATION = "REAUTHORIZATION"
    INVALID_ORDER = "INVALID_ORDER"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INSUFFICIENT_MARGIN = "INSUFFICIENT_MARGIN"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    SYMBOL_NOT_FOUND = "SYMBOL_NOT_FOUND"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_PRICE = "INVALID_PRICE"
    MIN_NOTIONAL = "MIN_NOTIONAL"
    MARKET_CLOSED = "MARKET_CLOSED"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with exponential backoff


# ============================================================
# EXCHANGE ERROR
# ============================================================

@dataclass
class ExchangeError:
    """
    Standardized exchange error.

    Provides unified error representation across brokers.
    """

    # Core fields
    category: ErrorCategory
    code: str               # Normalized error code
    message: str            # Human-readable message

    # Retry info
    retry_eligible: RetryEligibility
    retry_after_ms: Optional[int] = None

    # Original error info
    exchange_code: Optional[str] = None
    exchange_message: Optional[str] = None
    http_status: Optional[int] = None

    # Context
    exchange_id: Optional[str] = None
    operation: Optional[str] = None
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "retry_eligible": self.retry_eligible.value,
            "retry_after_ms": self.retry_after_ms,
            "exchange_code": self.exchange_code,
            "http_status": self.http_status,
            "exchange_id": self.exchange_id,
            "operation": self.operation,
            "symbol": self.symbol,
        }

    def is_retryable(self) -> bool:
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.code}: {self.message}"


class ExchangeException(Exception):
    """Exception wrapper for ExchangeError."""

    def __init__(self, error: ExchangeError):
        self.error = error
        super().__init__(str(error))

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def retryable(self) -> bool:
        return self.error.is_retryable()

    @property
    def http_status(self) -> Optional[int]:
        return self.error.http_status


class NetworkError(ExchangeException):
    """Connection failure or timeout."""


class RateLimited(ExchangeException):
    """Exchange throttled the request."""


class ExchangeRejected(ExchangeException):
    """Definitive rejection of a well-formed request."""


class AuthenticationFailed(ExchangeException):
    """Credentials refused and no refresh is possible."""


class ReauthorizationRequired(ExchangeException):
    """The account holder has to re-authorize access (OAuth1 expiry, dead refresh token)."""


# ============================================================
# HTTP STATUS MAPPING
# ============================================================

def map_http_error(
    exchange_id: str,
    status: int,
    message: str,
    exchange_code: Optional[str] = None,
    operation: Optional[str] = None,
) -> ExchangeException:
    """
    Classify a non-2xx response by HTTP status.

    429 and 5xx are retryable, every other 4xx is final.
    """
    prefix = exchange_id.upper()
    if status == 429:
        return RateLimited(ExchangeError(
            category=ErrorCategory.RATE_LIMIT,
            code=f"{prefix}_RATE_LIMIT",
            message=message or "Rate limit exceeded",
            retry_eligible=RetryEligibility.BACKOFF,
            exchange_code=exchange_code,
            http_status=status,
            exchange_id=exchange_id,
            operation=operation,
        ))
    if status >= 500:
        return ExchangeRejected(ExchangeError(
            category=ErrorCategory.EXCHANGE_ERROR,
            code=f"{prefix}_SERVER_ERROR",
            message=message or f"HTTP {status}",
            retry_eligible=RetryEligibility.RETRY,
            exchange_code=exchange_code,
            http_status=status,
            exchange_id=exchange_id,
            operation=operation,
        ))
    if status in (401, 403):
        return AuthenticationFailed(ExchangeError(
            category=ErrorCategory.AUTHENTICATION,
            code=f"{prefix}_AUTH_FAILED",
            message=message or "Authentication failed",
            retry_eligible=RetryEligibility.NO_RETRY,
            exchange_code=exchange_code,
            http_status=status,
            exchange_id=exchange_id,
            operation=operation,
        ))
    return ExchangeRejected(ExchangeError(
        category=ErrorCategory.INVALID_ORDER if status == 400 else ErrorCategory.UNKNOWN,
        code=f"{prefix}_HTTP_{status}",
        message=message or f"HTTP {status}",
        retry_eligible=RetryEligibility.NO_RETRY,
        exchange_code=exchange_code,
        http_status=status,
        exchange_id=exchange_id,
        operation=operation,
    ))


# ============================================================
# BINANCE ERROR MAPPING
# ============================================================

# Binance error codes to unified category
BINANCE_ERROR_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    # Rate limiting
    -1003: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    -1015: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),

    # Authentication
    -1022: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -2014: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -2015: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),

    # Order validation
    -1013: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    -1111: (ErrorCategory.INVALID_QUANTITY, RetryEligibility.NO_RETRY),
    -1121: (ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),
    -4014: (ErrorCategory.INVALID_PRICE, RetryEligibility.NO_RETRY),
    -4164: (ErrorCategory.MIN_NOTIONAL, RetryEligibility.NO_RETRY),

    # Funds
    -2018: (ErrorCategory.INSUFFICIENT_FUNDS, RetryEligibility.NO_RETRY),
    -2019: (ErrorCategory.INSUFFICIENT_MARGIN, RetryEligibility.NO_RETRY),

    # Orders and positions
    -2011: (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    -2013: (ErrorCategory.ORDER_NOT_FOUND, RetryEligibility.NO_RETRY),
    -2022: (ErrorCategory.POSITION_NOT_FOUND, RetryEligibility.NO_RETRY),

    # Exchange internal
    -1000: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    -1001: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    -1007: (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
}


def map_binance_error(
    code: int,
    message: str,
    http_status: Optional[int] = None,
) -> ExchangeException:
    """
    Map a Binance error payload to an exception.

    Known codes decide the category, unknown ones fall back to the
    HTTP status classification.
    """
    if code not in BINANCE_ERROR_MAP:
        return map_http_error("binance", http_status or 400, message, exchange_code=str(code))

    category, retry = BINANCE_ERROR_MAP[code]
    error = ExchangeError(
        category=category,
        code=f"BINANCE_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id="binance",
    )
    if category is ErrorCategory.RATE_LIMIT:
        return RateLimited(error)
    if category is ErrorCategory.AUTHENTICATION:
        return AuthenticationFailed(error)
    return ExchangeRejected(error)


# ============================================================
# ERROR FACTORY FUNCTIONS
# ============================================================

def create_network_error(
    exchange_id: str,
    message: str,
    operation: Optional[str] = None,
) -> NetworkError:
    return NetworkError(ExchangeError(
        category=ErrorCategory.NETWORK,
        code=f"{exchange_id.upper()}_NETWORK_ERROR",
        message=message,
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    ))


def create_timeout_error(
    exchange_id: str,
    timeout_seconds: float,
    operation: Optional[str] = None,
) -> NetworkError:
    return NetworkError(ExchangeError(
        category=ErrorCategory.TIMEOUT,
        code=f"{exchange_id.upper()}_TIMEOUT",
        message=f"Request timed out after {timeout_seconds}s",
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    ))


def create_reauthorization_error(
    exchange_id: str,
    message: str,
    operation: Optional[str] = None,
) -> ReauthorizationRequired:
    return ReauthorizationRequired(ExchangeError(
        category=ErrorCategory.REAUTHORIZATION,
        code=f"{exchange_id.upper()}_REAUTHORIZATION_REQUIRED",
        message=message,
        retry_eligible=RetryEligibility.NO_RETRY,
        http_status=401,
        exchange_id=exchange_id,
        operation=operation,
    ))


def create_rejection(
    exchange_id: str,
    message: str,
    category: ErrorCategory = ErrorCategory.INVALID_ORDER,
    operation: Optional[str] = None,
    symbol: Optional[str] = None,
) -> ExchangeRejected:
    """Rejection detected locally (unknown instrument, unsupported side)."""
    return ExchangeRejected(ExchangeError(
        category=category,
        code=f"{exchange_id.upper()}_{category.value}",
        message=message,
        retry_eligible=RetryEligibility.NO_RETRY,
        exchange_id=exchange_id,
        operation=operation,
        symbol=symbol,
    ))
