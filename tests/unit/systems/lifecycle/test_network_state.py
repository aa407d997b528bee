"""
Unit tests for the persisted node registry.
"""

from __future__ import annotations

from pathlib import Path

from netforge.config import NetworkConfig
from netforge.primitives.common import KeyFormat
from netforge.systems.lifecycle.state import NetworkState, load_state, save_state
from netforge.systems.topology.renderer import render_topology


def _state() -> NetworkState:
    topology = render_topology(["node0", "node1"], network_config=NetworkConfig(namespace="ns"))
    return NetworkState(
        namespace="ns",
        key_format=KeyFormat.PFX,
        topology=topology,
        account_high_water=9,
    )


class TestNetworkState:
    def test_round_trip(self, tmp_path: Path):
        path = tmp_path / "keys" / "state.yaml"
        original = _state()

        save_state(original, path)
        loaded = load_state(path)

        assert loaded is not None
        assert loaded.key_format == KeyFormat.PFX
        assert loaded.node_ids == ["node0", "node1"]
        assert loaded.account_high_water == 9
        assert loaded.topology.to_config_txt() == original.topology.to_config_txt()
        assert not path.with_name("state.yaml.tmp").exists()

    def test_missing_file(self, tmp_path: Path):
        assert load_state(tmp_path / "state.yaml") is None

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "state.yaml"
        path.write_text("")
        assert load_state(path) is None

    def test_written_as_plain_yaml(self, tmp_path: Path):
        path = save_state(_state(), tmp_path / "state.yaml")
        text = path.read_text()
        assert "key_format: pfx" in text
        assert "node_id: node1" in text
