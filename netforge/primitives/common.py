"""
Netforge -- Common Primitives

Shared enums, base classes, and utilities used across all systems.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


# ─── Enums ────────────────────────────────────────────────────────


class KeyFormat(enum.StrEnum):
    """On-disk format of gossip keys. Chosen once per network."""

    PEM = "pem"
    PFX = "pfx"


class LifecycleOperation(enum.StrEnum):
    DEPLOY = "deploy"
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class NodeStatus(int, enum.Enum):
    """Platform status codes as exported by the node's metrics endpoint."""

    NO_VALUE = 0
    STARTING_UP = 1
    ACTIVE = 2
    BEHIND = 4
    FREEZING = 5
    FREEZE_COMPLETE = 6
    REPLAYING_EVENTS = 7
    OBSERVING = 8
    CHECKING = 9
    RECONNECT_COMPLETE = 10
    CATASTROPHIC_FAILURE = 11


# ─── Base Models ──────────────────────────────────────────────────


class NetforgeBaseModel(BaseModel):
    """Base model for all Netforge primitives."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class AccountId(NetforgeBaseModel):
    """Network account identifier, rendered as ``shard.realm.num``."""

    shard: int = 0
    realm: int = 0
    num: int

    def __str__(self) -> str:
        return f"{self.shard}.{self.realm}.{self.num}"

    @classmethod
    def parse(cls, value: str) -> AccountId:
        parts = value.strip().split(".")
        if len(parts) != 3:
            raise ValueError(f"Malformed account id: {value!r}")
        shard, realm, num = (int(p) for p in parts)
        return cls(shard=shard, realm=realm, num=num)
