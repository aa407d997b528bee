"""
Netforge -- Network State

The node registry: which nodes the network has, their topology, and the key
format chosen at deployment. Persisted as YAML next to the keys so that the
next operation starts from what the last one left behind.
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

import structlog
import yaml
from pydantic import Field

from netforge.primitives.common import KeyFormat, NetforgeBaseModel, utc_now
from netforge.systems.topology.types import NetworkTopology

logger = structlog.get_logger("netforge.lifecycle.state")


class NetworkState(NetforgeBaseModel):
    namespace: str
    key_format: KeyFormat
    topology: NetworkTopology
    # Highest account number ever assigned, including deleted nodes
    account_high_water: int = 0
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def node_ids(self) -> list[str]:
        return self.topology.node_ids


def load_state(path: str | Path) -> NetworkState | None:
    """Read the persisted state, or ``None`` if no network has been deployed."""
    path = Path(path)
    if not path.exists():
        return None
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not raw:
        return None
    return NetworkState.model_validate(raw)


def save_state(state: NetworkState, path: str | Path) -> Path:
    """Write atomically: a partial write never replaces the previous state."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        yaml.safe_dump(state.model_dump(mode="json"), f, sort_keys=False)
    os.replace(tmp, path)
    logger.info(
        "network_state_saved",
        path=str(path),
        nodes=state.node_ids,
        key_format=str(state.key_format),
    )
    return path
