"""
Netforge -- Lifecycle Types
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pydantic import Field

from netforge.primitives.common import KeyFormat, LifecycleOperation, NetforgeBaseModel
from netforge.systems.lifecycle.state import NetworkState
from netforge.systems.pipeline.types import StepOutcome
from netforge.systems.topology.types import NetworkTopology

KeyHashes = dict[str, dict[str, str]]


@dataclass
class OperationContext:
    """Mutable state threaded through one lifecycle pipeline run."""

    operation_id: str
    operation: LifecycleOperation
    node_id: str | None
    node_ids: list[str]
    key_format: KeyFormat
    previous: NetworkState | None = None
    # Nodes whose private key material is generated and staged
    targets: set[str] = field(default_factory=set)
    addresses: dict[str, str] = field(default_factory=dict)
    weights: dict[str, int] = field(default_factory=dict)
    regenerate_gossip_keys: bool = False
    regenerate_tls_keys: bool = False

    topology: NetworkTopology | None = None
    topology_file: Path | None = None
    previous_config_txt: str | None = None
    hashes_before: KeyHashes = field(default_factory=dict)
    key_files: list[Path] = field(default_factory=list)
    nodes_staged: list[str] = field(default_factory=list)

    @property
    def existing_node_ids(self) -> list[str]:
        return self.previous.node_ids if self.previous else []


class LifecycleResult(NetforgeBaseModel):
    operation_id: str
    operation: LifecycleOperation
    node_id: str | None = None
    topology: NetworkTopology
    step_outcomes: list[StepOutcome] = Field(default_factory=list)
    nodes_staged: list[str] = Field(default_factory=list)
    key_files: list[str] = Field(default_factory=list)
    duration_ms: int = 0
