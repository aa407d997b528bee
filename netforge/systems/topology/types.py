"""
Netforge -- Topology Types
"""

from __future__ import annotations

from pydantic import Field

from netforge.primitives.common import AccountId, NetforgeBaseModel


class NodeEntry(NetforgeBaseModel):
    """One node's line in the address book."""

    node_id: str
    node_seq: int
    account_id: AccountId
    weight: int = 1
    internal_host: str
    internal_port: int
    external_host: str
    external_port: int

    def to_address_line(self) -> str:
        return ", ".join([
            "address",
            str(self.node_seq),
            self.node_id,
            self.node_id,
            str(self.weight),
            self.internal_host,
            str(self.internal_port),
            self.external_host,
            str(self.external_port),
            str(self.account_id),
        ])


class NetworkTopology(NetforgeBaseModel):
    """
    The network's shared address book, in node order.

    Rendering is deterministic: equal topologies produce byte-identical
    ``config.txt`` output.
    """

    chain_id: str
    app_name: str
    entries: list[NodeEntry] = Field(default_factory=list)

    @property
    def node_ids(self) -> list[str]:
        return [e.node_id for e in self.entries]

    def entry(self, node_id: str) -> NodeEntry | None:
        for e in self.entries:
            if e.node_id == node_id:
                return e
        return None

    def account_map(self) -> dict[str, AccountId]:
        return {e.node_id: e.account_id for e in self.entries}

    @property
    def next_node_id(self) -> int:
        return max((e.node_seq for e in self.entries), default=-1) + 1

    def to_config_txt(self) -> str:
        lines = [
            f"swirld, {self.chain_id}",
            f"app, {self.app_name}",
            *(e.to_address_line() for e in self.entries),
            f"nextNodeId, {self.next_node_id}",
        ]
        return "\n".join(lines) + "\n"
