"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from group_ordering.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from group_ordering.core.exceptions import (
    GroupOrderError,
    InvalidRequest,
    NotFound,
    SessionClosed,
    CapacityExceeded,
    IdentityRequired,
    LimitExceeded,
    InvalidSplit,
    HasPendingItems,
    CodeGenerationFailed,
    LeaderRequired,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "GroupOrderError",
    "InvalidRequest",
    "NotFound",
    "SessionClosed",
    "CapacityExceeded",
    "IdentityRequired",
    "LimitExceeded",
    "InvalidSplit",
    "HasPendingItems",
    "CodeGenerationFailed",
    "LeaderRequired",
]
