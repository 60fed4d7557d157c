"""
Exchange Adapter - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Credential masking for adapter request logging.

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys, secrets, tokens or signatures
2. Mask sensitive headers for every supported auth scheme
3. Mask sensitive body/query parameters

============================================================
"""

import logging
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE DATA PATTERNS
# ============================================================

# Header names that should be masked
SENSITIVE_HEADERS = {
    "authorization",
    "x-api-key",
    "x-mbx-apikey",
    "x-signature",
    "x-cap-api-key",
    "cst",
    "x-security-token",
    "signature",
}

# Parameter names that should be masked
SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "password",
    "identifier",
    "passphrase",
    "signature",
    "oauth_signature",
    "oauth_token",
    "pin",
    "token",
    "access_token",
    "refresh_token",
    "client_secret",
}


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start

    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


def mask_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values masked."""
    if not headers:
        return {}
    return {
        key: mask_value(str(value)) if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def mask_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of params with sensitive values masked, recursing into dicts."""
    if not params:
        return {}

    masked: Dict[str, Any] = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value))
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        else:
            masked[key] = value
    return masked


def log_request(
    exchange_id: str,
    method: str,
    path: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> None:
    logger.debug(
        f"[{exchange_id}] {method} {path} "
        f"headers={mask_headers(headers)} params={mask_params(params)}"
    )
