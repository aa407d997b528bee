"""
Netforge -- Staging Plan

Which local files go to which node. Every node receives the topology record
and the shared public certificate material; private key files go only to the
nodes whose keys the operation created or rotated.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from netforge.primitives.common import KeyFormat
from netforge.systems.keys.public_store import PUBLIC_PFX
from netforge.systems.keys.roles import AgreementRole, SigningRole, TLSRole, key_file_paths


@dataclass
class NodeStaging:
    node_id: str
    topology_file: Path
    key_files: list[Path] = field(default_factory=list)
    private_files: list[Path] = field(default_factory=list)

    @property
    def all_key_files(self) -> list[Path]:
        return [*self.key_files, *self.private_files]


@dataclass
class StagingPlan:
    entries: dict[str, NodeStaging] = field(default_factory=dict)

    @property
    def node_ids(self) -> list[str]:
        return list(self.entries)

    def for_node(self, node_id: str) -> NodeStaging:
        return self.entries[node_id]


def public_key_files(
    node_ids: Sequence[str],
    keys_dir: Path,
    key_format: KeyFormat,
) -> list[Path]:
    """Shared public material: every node's public PEMs, or ``public.pfx``."""
    if key_format == KeyFormat.PFX:
        return [keys_dir / PUBLIC_PFX]
    files: list[Path] = []
    for node_id in node_ids:
        for role in (SigningRole(), AgreementRole()):
            files.append(key_file_paths(role, node_id, keys_dir).certificate_file)
    return files


def private_key_files(node_id: str, keys_dir: Path, key_format: KeyFormat) -> list[Path]:
    """A node's own secrets: gossip private keys plus its TLS key and certificate."""
    files: list[Path]
    if key_format == KeyFormat.PFX:
        files = [keys_dir / f"private-{node_id}.pfx"]
    else:
        files = [
            key_file_paths(role, node_id, keys_dir).private_key_file
            for role in (SigningRole(), AgreementRole())
        ]
    files.extend(key_file_paths(TLSRole(), node_id, keys_dir))
    return files


def build_staging_plan(
    node_ids: Sequence[str],
    *,
    keys_dir: str | Path,
    key_format: KeyFormat,
    topology_file: str | Path,
    targets: Collection[str] = (),
) -> StagingPlan:
    """
    Plan the files for ``node_ids``.

    ``targets`` are the nodes whose private key files are staged; everyone
    else receives only the topology record and public material.
    """
    keys_dir = Path(keys_dir)
    shared = public_key_files(node_ids, keys_dir, key_format)
    plan = StagingPlan()
    for node_id in node_ids:
        plan.entries[node_id] = NodeStaging(
            node_id=node_id,
            topology_file=Path(topology_file),
            key_files=list(shared),
            private_files=(
                private_key_files(node_id, keys_dir, key_format) if node_id in targets else []
            ),
        )
    return plan
