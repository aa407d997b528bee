"""
Unit tests for the Topology Renderer.

Determinism, account id stability across add / delete, and the config.txt
line format.
"""

from __future__ import annotations

import pytest

from netforge.config import NetworkConfig
from netforge.errors import IllegalArgumentError, MissingArgumentError
from netforge.primitives.common import AccountId
from netforge.systems.topology.renderer import (
    assign_account_ids,
    get_node_account_map,
    render_topology,
)

NODES = ["node0", "node1", "node2"]


@pytest.fixture
def network() -> NetworkConfig:
    return NetworkConfig(namespace="solo-test", chain_id="298")


# ─── Account Ids ──────────────────────────────────────────────────


class TestAccountIds:
    def test_sequential_from_start(self):
        accounts = get_node_account_map(NODES)
        assert [str(a) for a in accounts.values()] == ["0.0.3", "0.0.4", "0.0.5"]
        assert list(accounts) == NODES

    def test_custom_start(self):
        accounts = get_node_account_map(["a", "b"], AccountId(shard=1, realm=2, num=10))
        assert [str(a) for a in accounts.values()] == ["1.2.10", "1.2.11"]

    def test_iteration_order_not_sorted(self):
        accounts = get_node_account_map(["node2", "node0"])
        assert accounts["node2"].num == 3
        assert accounts["node0"].num == 4

    def test_existing_nodes_keep_ids_on_add(self, network):
        before = render_topology(NODES, network_config=network)
        after = assign_account_ids([*NODES, "node3"], before)

        assert {n: after[n] for n in NODES} == before.account_map()
        assert after["node3"].num == 6

    def test_deleted_numbers_not_reused(self, network):
        full = render_topology([*NODES, "node3"], network_config=network)
        without_node3 = render_topology(NODES, network_config=network, previous=full)

        # node3's 0.0.6 is gone from the topology but stays retired
        readded = assign_account_ids([*NODES, "node4"], without_node3, high_water=6)
        assert readded["node4"].num == 7

    def test_delete_keeps_remaining_ids(self, network):
        full = render_topology(NODES, network_config=network)
        after = render_topology(["node0", "node2"], network_config=network, previous=full)
        assert after.account_map() == {
            "node0": full.account_map()["node0"],
            "node2": full.account_map()["node2"],
        }

    def test_account_id_parse(self):
        assert AccountId.parse("0.0.42") == AccountId(num=42)
        with pytest.raises(ValueError):
            AccountId.parse("0.42")


# ─── Rendering ────────────────────────────────────────────────────


class TestRenderTopology:
    def test_byte_identical_for_identical_input(self, network):
        first = render_topology(NODES, network_config=network).to_config_txt()
        second = render_topology(NODES, network_config=network).to_config_txt()
        assert first == second

    def test_config_txt_format(self, network):
        text = render_topology(NODES[:2], network_config=network).to_config_txt()
        host0 = "network-node0-svc.solo-test.svc.cluster.local"
        host1 = "network-node1-svc.solo-test.svc.cluster.local"
        assert text == (
            "swirld, 298\n"
            "app, HederaNode.jar\n"
            f"address, 0, node0, node0, 1, {host0}, 50111, {host0}, 50111, 0.0.3\n"
            f"address, 1, node1, node1, 1, {host1}, 50111, {host1}, 50111, 0.0.4\n"
            "nextNodeId, 2\n"
        )

    def test_node_seq_follows_account_offset(self, network):
        full = render_topology(NODES, network_config=network)
        after = render_topology(["node0", "node2"], network_config=network, previous=full)
        assert [e.node_seq for e in after.entries] == [0, 2]
        assert after.next_node_id == 3

    def test_address_and_weight_overrides(self, network):
        topology = render_topology(
            NODES,
            network_config=network,
            addresses={"node1": "10.0.0.7"},
            weights={"node2": 5},
        )
        assert topology.entry("node1").internal_host == "10.0.0.7"
        assert topology.entry("node1").external_host == "10.0.0.7"
        assert topology.entry("node2").weight == 5
        assert topology.entry("node0").weight == 1

    def test_previous_weight_and_address_carried(self, network):
        first = render_topology(
            NODES, network_config=network,
            addresses={"node1": "10.0.0.7"}, weights={"node1": 3},
        )
        second = render_topology([*NODES, "node3"], network_config=network, previous=first)
        assert second.entry("node1").internal_host == "10.0.0.7"
        assert second.entry("node1").weight == 3

    def test_empty_node_list(self, network):
        with pytest.raises(MissingArgumentError):
            render_topology([], network_config=network)

    def test_duplicate_nodes(self, network):
        with pytest.raises(IllegalArgumentError):
            render_topology(["node0", "node0"], network_config=network)
