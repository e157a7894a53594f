"""
Models package for the SessionGuard API.
Exports all database models.
"""

from sessionguard.src.models.refresh_tokens import (
    RefreshToken,
    RevocationReason,
    TokenState,
)
from sessionguard.src.models.users import User

__all__ = ["User", "RefreshToken", "RevocationReason", "TokenState"]
