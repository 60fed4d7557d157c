"""
Storage Models Package.

Declarative base and mixins. The engine's tables live in
copytrade_engine.models.
"""

from .base import Base, TimestampMixin, new_id


__all__ = ["Base", "TimestampMixin", "new_id"]
