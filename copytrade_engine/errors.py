"""
Copy-Trade Engine - Domain Error Taxonomy.

============================================================
PURPOSE
============================================================
Errors raised by the executor and the fan-out engine before or
around exchange calls. Exchange-side failures live in
copytrade_engine.adapters.errors.

Every error carries a stable `code` that ends up in
ExecutionResult.error_code when the executor converts it into
a rejected result.

ERROR CODES:
- VALIDATION_ERROR      Malformed intent or zero sized order
- CREDENTIAL_NOT_FOUND  No credential for (owner, exchange, env)
- INSUFFICIENT_MARGIN   Margin buffer would be breached
- REVERSAL_FAILED       Close leg of a reversal failed
- DRAWDOWN_EXCEEDED     Follower equity below the drawdown stop

============================================================
"""

from decimal import Decimal
from typing import Optional


class EngineError(Exception):
    """Base class for domain errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"


class CredentialNotFound(EngineError):
    code = "CREDENTIAL_NOT_FOUND"

    def __init__(self, owner_id: str, exchange_id: str, environment: str):
        self.owner_id = owner_id
        self.exchange_id = exchange_id
        self.environment = environment
        super().__init__(f"No {environment} credential for {owner_id} on {exchange_id}")


class InsufficientMargin(EngineError):
    code = "INSUFFICIENT_MARGIN"

    def __init__(
        self,
        available: Decimal,
        required: Decimal,
        buffer_percent: Decimal,
    ):
        self.available = available
        self.required = required
        self.buffer_percent = buffer_percent
        super().__init__(
            f"Available margin {available} cannot cover {required} "
            f"while keeping a {buffer_percent}% buffer"
        )


class ReversalFailed(EngineError):
    code = "REVERSAL_FAILED"

    def __init__(self, symbol: str, reason: Optional[str] = None):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"Could not close existing {symbol} position for reversal: {reason}")


class DrawdownExceeded(EngineError):
    code = "DRAWDOWN_EXCEEDED"

    def __init__(self, relationship_id: str, drawdown: Decimal, limit: Decimal):
        self.relationship_id = relationship_id
        self.drawdown = drawdown
        self.limit = limit
        super().__init__(
            f"Relationship {relationship_id} drawdown {drawdown:.2f}% exceeds stop {limit}%"
        )
