"""
Unit tests for remote staging: the per-node file plan and the retrying
copy / exec primitives.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from netforge.config import NetworkConfig, StagingConfig
from netforge.errors import ClusterAccessError, RemoteStagingError
from netforge.primitives.common import KeyFormat
from netforge.systems.staging import NodeStaging, RemoteStager, build_staging_plan

NODES = ["node0", "node1", "node2"]


@pytest.fixture
def staging_config() -> StagingConfig:
    return StagingConfig(max_attempts=3, backoff_base_s=0.0, backoff_max_s=0.0)


@pytest.fixture
def stager(cluster, staging_config) -> RemoteStager:
    return RemoteStager(cluster, staging_config, NetworkConfig(namespace="solo-test"))


@pytest.fixture
def topology_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.txt"
    path.write_text("swirld, 298\n")
    return path


def _touch_all(paths: list[Path]) -> None:
    for p in paths:
        p.write_text(p.name)


# ─── Plan ─────────────────────────────────────────────────────────


class TestStagingPlan:
    def test_private_files_only_for_targets(self, keys_dir: Path, topology_file: Path):
        plan = build_staging_plan(
            [*NODES, "node3"],
            keys_dir=keys_dir,
            key_format=KeyFormat.PEM,
            topology_file=topology_file,
            targets=["node3"],
        )

        assert plan.node_ids == [*NODES, "node3"]
        for node in NODES:
            assert plan.for_node(node).private_files == []
        assert [p.name for p in plan.for_node("node3").private_files] == [
            "s-private-node3.pem",
            "a-private-node3.pem",
            "hedera-node3.key",
            "hedera-node3.crt",
        ]

    def test_pem_public_material_covers_every_node(self, keys_dir: Path, topology_file: Path):
        plan = build_staging_plan(
            NODES, keys_dir=keys_dir, key_format=KeyFormat.PEM, topology_file=topology_file,
        )
        names = [p.name for p in plan.for_node("node1").key_files]
        assert names == [
            "s-public-node0.pem", "a-public-node0.pem",
            "s-public-node1.pem", "a-public-node1.pem",
            "s-public-node2.pem", "a-public-node2.pem",
        ]

    def test_pfx_public_material_is_shared_store(self, keys_dir: Path, topology_file: Path):
        plan = build_staging_plan(
            NODES,
            keys_dir=keys_dir,
            key_format=KeyFormat.PFX,
            topology_file=topology_file,
            targets=NODES,
        )
        entry = plan.for_node("node0")
        assert [p.name for p in entry.key_files] == ["public.pfx"]
        assert [p.name for p in entry.private_files][0] == "private-node0.pfx"
        assert entry.topology_file == topology_file


# ─── Stager ───────────────────────────────────────────────────────


class TestRemoteStager:
    @pytest.mark.asyncio
    async def test_stage_copies_topology_and_keys(
        self, stager, cluster, keys_dir: Path, topology_file: Path,
    ):
        plan = build_staging_plan(
            ["node0"],
            keys_dir=keys_dir,
            key_format=KeyFormat.PEM,
            topology_file=topology_file,
            targets=["node0"],
        )
        entry = plan.for_node("node0")
        _touch_all(entry.all_key_files)

        staged = await stager.stage(entry)

        keys_path = "/opt/hgcapp/services-hedera/HapiApp2.0/data/keys"
        assert staged[0] == "/opt/hgcapp/services-hedera/HapiApp2.0/config.txt"
        assert f"{keys_path}/s-private-node0.pem" in staged
        assert cluster.copied_to("network-node0-0")[0] == "config.txt"
        commands = [cmd for pod, cmd in cluster.commands if pod == "network-node0-0"]
        assert ["mkdir", "-p", keys_path] in commands
        assert ["chown", "-R", "hedera:hedera", keys_path] in commands
        assert ["chmod", "-R", "0640", keys_path] in commands

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, stager, cluster, topology_file: Path):
        cluster.inject(
            "copy_to", "network-node0-0",
            ClusterAccessError("connection reset"),
            ConnectionResetError("reset"),
        )

        staged = await stager.stage_topology("node0", topology_file)

        assert staged == ["/opt/hgcapp/services-hedera/HapiApp2.0/config.txt"]
        assert cluster.copied_to("network-node0-0") == ["config.txt"]

    @pytest.mark.asyncio
    async def test_terminal_failure_not_retried(self, stager, cluster, topology_file: Path):
        cluster.inject(
            "copy_to", "network-node0-0",
            ClusterAccessError("pod deleted", retryable=False),
        )

        with pytest.raises(ClusterAccessError):
            await stager.stage_topology("node0", topology_file)
        assert cluster.copies == []

    @pytest.mark.asyncio
    async def test_exhaustion_raises_remote_staging_error(self, stager, cluster):
        cluster.inject("exec", "network-node1-0", *(ClusterAccessError("reset") for _ in range(3)))

        with pytest.raises(RemoteStagingError) as info:
            await stager.exec("node1", "echo hi")

        assert info.value.details["node_id"] == "node1"
        assert isinstance(info.value.__cause__, ClusterAccessError)

    @pytest.mark.asyncio
    async def test_string_command_runs_through_shell(self, stager, cluster):
        await stager.exec("node2", "echo hi")
        assert cluster.commands[-1] == ("network-node2-0", ["bash", "-c", "echo hi"])

    @pytest.mark.asyncio
    async def test_node_without_key_files_gets_topology_only(
        self, stager, cluster, topology_file: Path,
    ):
        await stager.stage(NodeStaging(node_id="node0", topology_file=topology_file))

        assert cluster.copied_to("network-node0-0") == ["config.txt"]
        assert cluster.commands == []
