"""
Netforge -- Shared Primitives

Enums, base models and small utilities used by every system.
"""

from netforge.primitives.common import (
    AccountId,
    KeyFormat,
    LifecycleOperation,
    NetforgeBaseModel,
    NodeStatus,
    new_id,
    utc_now,
)

__all__ = [
    "AccountId",
    "KeyFormat",
    "LifecycleOperation",
    "NetforgeBaseModel",
    "NodeStatus",
    "new_id",
    "utc_now",
]
