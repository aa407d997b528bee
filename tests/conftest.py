"""
Shared fixtures and in-memory fakes for the collaborators Netforge drives.

FakeKeytool keeps each keystore as a small JSON file, so copying a keystore
with shutil carries its entries the way a real PKCS#12 file would.
FakeCluster models just enough of a pod to answer status polls: a node turns
ACTIVE when its start command runs and FREEZE_COMPLETE when frozen.
"""

from __future__ import annotations

import json
from collections import defaultdict
from pathlib import Path
from typing import Any

import pytest

from netforge.config import (
    KeysConfig,
    LifecycleConfig,
    NetforgeConfig,
    NetworkConfig,
    StagingConfig,
)
from netforge.errors import KeytoolError
from netforge.primitives.common import NodeStatus, new_id
from netforge.systems.topology.types import NetworkTopology

# ─── Keystore ─────────────────────────────────────────────────────


class FakeKeytool:
    """File-backed KeystoreTool. Certificates are opaque strings."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def _load(keystore: Path) -> dict[str, dict[str, str]]:
        if not keystore.exists():
            return {}
        return json.loads(keystore.read_text())

    @staticmethod
    def _save(keystore: Path, entries: dict[str, dict[str, str]]) -> None:
        keystore.write_text(json.dumps(entries, sort_keys=True))

    async def gen_key_pair(
        self,
        *,
        keystore: Path,
        alias: str,
        dname: str,
        key_alg: str,
        sig_alg: str,
        validity_days: int,
        key_size: int | None = None,
        group_name: str | None = None,
    ) -> None:
        self.calls.append(("gen_key_pair", alias))
        entries = self._load(keystore)
        if alias in entries:
            raise KeytoolError(f"alias <{alias}> already exists")
        entries[alias] = {
            "type": "private",
            "key_alg": key_alg,
            "cert": f"{dname}|self|{new_id()}",
        }
        self._save(keystore, entries)

    async def cert_req(self, *, keystore: Path, alias: str, out_file: Path) -> None:
        self.calls.append(("cert_req", alias))
        entries = self._load(keystore)
        if alias not in entries:
            raise KeytoolError(f"alias <{alias}> does not exist")
        out_file.write_text(json.dumps({"subject": alias}))

    async def gen_cert(
        self,
        *,
        keystore: Path,
        issuer_alias: str,
        in_file: Path,
        out_file: Path,
        validity_days: int,
    ) -> None:
        self.calls.append(("gen_cert", issuer_alias))
        entries = self._load(keystore)
        if entries.get(issuer_alias, {}).get("type") != "private":
            raise KeytoolError(f"alias <{issuer_alias}> has no private key")
        subject = json.loads(in_file.read_text())["subject"]
        out_file.write_text(f"cn={subject}|issued-by:{issuer_alias}|{new_id()}")

    async def import_cert(
        self,
        *,
        keystore: Path,
        alias: str,
        cert_file: Path,
        no_prompt: bool = False,
    ) -> None:
        self.calls.append(("import_cert", alias))
        entries = self._load(keystore)
        cert = cert_file.read_text()
        existing = entries.get(alias)
        if existing is not None and existing["type"] != "private":
            raise KeytoolError(f"Certificate not imported, alias <{alias}> already exists")
        if existing is not None:
            existing["cert"] = cert
        else:
            entries[alias] = {"type": "trusted", "cert": cert}
        self._save(keystore, entries)

    async def export_cert(self, *, keystore: Path, alias: str, out_file: Path) -> None:
        self.calls.append(("export_cert", alias))
        entries = self._load(keystore)
        if alias not in entries:
            raise KeytoolError(f"Alias <{alias}> does not exist")
        out_file.write_text(entries[alias]["cert"])

    async def delete_entry(self, *, keystore: Path, alias: str) -> None:
        self.calls.append(("delete_entry", alias))
        entries = self._load(keystore)
        if alias not in entries:
            raise KeytoolError(f"Alias <{alias}> does not exist")
        del entries[alias]
        self._save(keystore, entries)

    async def list_aliases(self, *, keystore: Path) -> list[str]:
        return sorted(self._load(keystore))

    def entries(self, keystore: Path) -> dict[str, dict[str, str]]:
        return self._load(keystore)


# ─── Cluster ──────────────────────────────────────────────────────


class FakeCluster:
    """
    ClusterAccess fake. Records copies and commands, tracks a status per pod,
    and raises injected failures in FIFO order per (operation, pod).
    """

    def __init__(self) -> None:
        self.copies: list[tuple[str, str, str]] = []
        self.commands: list[tuple[str, list[str]]] = []
        self.status: dict[str, NodeStatus] = defaultdict(lambda: NodeStatus.STARTING_UP)
        self.stuck: set[str] = set()
        self.unready_labels: set[str] = set()
        self._failures: dict[tuple[str, str], list[BaseException]] = defaultdict(list)

    def inject(self, operation: str, pod: str, *errors: BaseException) -> None:
        self._failures[(operation, pod)].extend(errors)

    def _maybe_fail(self, operation: str, pod: str) -> None:
        queue = self._failures.get((operation, pod))
        if queue:
            raise queue.pop(0)

    def pending(self, operation: str, pod: str) -> int:
        return len(self._failures.get((operation, pod), []))

    def freeze(self, pods: list[str]) -> None:
        for pod in pods:
            self.status[pod] = NodeStatus.FREEZE_COMPLETE

    def copied_to(self, pod: str) -> list[str]:
        return [name for p, name, _ in self.copies if p == pod]

    async def copy_to(self, pod: str, container: str, local_path: Path, dest_dir: str) -> None:
        self._maybe_fail("copy_to", pod)
        if not Path(local_path).exists():
            raise FileNotFoundError(local_path)
        self.copies.append((pod, Path(local_path).name, dest_dir))

    async def copy_from(self, pod: str, container: str, remote_path: str, dest_dir: Path) -> Path:
        self._maybe_fail("copy_from", pod)
        return Path(dest_dir) / Path(remote_path).name

    async def exec_container(self, pod: str, container: str, command: list[str]) -> str:
        self._maybe_fail("exec", pod)
        self.commands.append((pod, list(command)))
        script = command[-1]
        if "platform_PlatformStatus" in script:
            code = int(self.status[pod])
            return f'platform_PlatformStatus{{node="{pod}"}} {code}.0\n'
        if "restart network-node" in script and pod not in self.stuck:
            self.status[pod] = NodeStatus.ACTIVE
        return ""

    async def get_pods_by_label(self, labels: list[str]) -> list[str]:
        return []

    async def port_forward(self, pod: str, local_port: int, pod_port: int) -> Any:
        return None

    async def is_pod_ready(self, labels: list[str]) -> bool:
        return not any(label in self.unready_labels for label in labels)


class FakeChartInstaller:
    def __init__(self) -> None:
        self.installs: list[tuple[str, list[str]]] = []
        self.upgrades: list[tuple[str, list[str]]] = []
        self.on_upgrade = None

    async def install(self, namespace: str, topology: NetworkTopology) -> None:
        self.installs.append((namespace, topology.node_ids))

    async def upgrade(self, namespace: str, topology: NetworkTopology) -> None:
        self.upgrades.append((namespace, topology.node_ids))
        if self.on_upgrade is not None:
            self.on_upgrade(topology)


class FakeFreezeController:
    def __init__(self, cluster: FakeCluster, network: NetworkConfig) -> None:
        self._cluster = cluster
        self._network = network
        self.freezes: list[list[str]] = []

    async def freeze(self, topology: NetworkTopology) -> None:
        self.freezes.append(topology.node_ids)
        self._cluster.freeze([self._network.pod_name(n) for n in topology.node_ids])


# ─── Fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def keys_dir(tmp_path: Path) -> Path:
    path = tmp_path / "keys"
    path.mkdir()
    return path


@pytest.fixture
def keys_config(keys_dir: Path) -> KeysConfig:
    # Small RSA keys keep generation fast; algorithms are otherwise production
    return KeysConfig(
        keys_dir=str(keys_dir),
        signing_key_size=2048,
        tls_key_size=2048,
    )


@pytest.fixture
def netforge_config(keys_config: KeysConfig) -> NetforgeConfig:
    return NetforgeConfig(
        keys=keys_config,
        network=NetworkConfig(namespace="solo-test"),
        staging=StagingConfig(max_attempts=3, backoff_base_s=0.0, backoff_max_s=0.0),
        lifecycle=LifecycleConfig(
            status_max_attempts=3,
            status_delay_s=0.0,
            freeze_max_attempts=3,
            freeze_delay_s=0.0,
            pod_ready_max_attempts=3,
            pod_ready_delay_s=0.0,
        ),
    )


@pytest.fixture
def keytool() -> FakeKeytool:
    return FakeKeytool()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def chart_installer() -> FakeChartInstaller:
    return FakeChartInstaller()


@pytest.fixture
def freeze_controller(cluster: FakeCluster, netforge_config: NetforgeConfig) -> FakeFreezeController:
    return FakeFreezeController(cluster, netforge_config.network)
