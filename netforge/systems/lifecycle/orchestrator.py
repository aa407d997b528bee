"""
Netforge -- Node Lifecycle Orchestrator

Sequences initial deployment and the add / update / delete of a node as
explicit pipelines of named steps.

Ordering per operation:
  keys -> topology -> (freeze) -> chart -> staging -> restart -> health

The orchestrator owns the non-interference guarantee: key material of nodes
outside an operation's target is hashed before the operation and checked
afterwards. It never regenerates, backs up or stages private keys of a node
that is not the target.

Re-running a failed operation is the recovery path. Key generation for a node
whose files already exist is a no-op, and account ids come from the persisted
state, so a re-run converges on the same result.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections.abc import Awaitable, Callable, Sequence
from functools import partial
from pathlib import Path

import structlog

from netforge.config import NetforgeConfig
from netforge.errors import (
    IllegalArgumentError,
    KeyFormatConflictError,
    MissingArgumentError,
    NonInterferenceError,
)
from netforge.primitives.common import KeyFormat, LifecycleOperation, new_id
from netforge.systems.keys.backup import (
    PEM_BACKUP_PREFIX,
    PFX_BACKUP_PREFIX,
    TLS_BACKUP_PREFIX,
    backup_old_pem_keys,
    backup_old_pfx_keys,
    backup_old_tls_keys,
    prune_backups,
)
from netforge.systems.keys.keytool import KeystoreTool
from netforge.systems.keys.manager import KeyManager
from netforge.systems.keys.roles import AgreementRole, SigningRole, TLSRole, key_file_paths
from netforge.systems.lifecycle.contracts import ChartInstaller, FreezeController
from netforge.systems.lifecycle.health import NodeHealthChecker
from netforge.systems.lifecycle.state import NetworkState, load_state, save_state
from netforge.systems.lifecycle.types import KeyHashes, LifecycleResult, OperationContext
from netforge.systems.pipeline.pipeline import TaskPipeline
from netforge.systems.pipeline.types import Step, SubTask
from netforge.systems.staging.cluster import ClusterAccess
from netforge.systems.staging.plan import build_staging_plan
from netforge.systems.staging.stager import RemoteStager
from netforge.systems.topology.renderer import render_topology
from netforge.telemetry.logging import bind_operation, clear_operation

logger = structlog.get_logger("netforge.lifecycle")


class NodeLifecycleOrchestrator:
    """
    Drives lifecycle operations against one namespace.

    Collaborators:
      cluster            -- copy / exec / readiness against pods
      chart_installer    -- installs and upgrades the network workload
      freeze_controller  -- freezes consensus ahead of a topology change
      keytool            -- required when the network uses PKCS#12 keys
    """

    def __init__(
        self,
        config: NetforgeConfig,
        *,
        cluster: ClusterAccess,
        chart_installer: ChartInstaller,
        freeze_controller: FreezeController,
        keytool: KeystoreTool | None = None,
        key_manager: KeyManager | None = None,
    ) -> None:
        self._config = config
        self._cluster = cluster
        self._charts = chart_installer
        self._freeze = freeze_controller
        self._keytool = keytool
        self.key_manager = key_manager or KeyManager(config.keys)
        self.stager = RemoteStager(cluster, config.staging, config.network)
        self.health = NodeHealthChecker(cluster, self.stager, config.lifecycle, config.network)
        self.keys_dir = Path(config.keys.keys_dir)
        self.state_path = self.keys_dir / config.lifecycle.state_file
        self.topology_file = self.keys_dir.parent / config.staging.config_file_name
        self._logger = logger.bind(system="lifecycle")

    @property
    def namespace(self) -> str:
        return self._config.network.namespace

    def load_state(self) -> NetworkState | None:
        return load_state(self.state_path)

    # ─── Operations ───────────────────────────────────────────────

    async def deploy(
        self,
        node_ids: Sequence[str],
        key_format: KeyFormat | None = None,
    ) -> LifecycleResult:
        """Generate keys for every node, install the network and bring it ACTIVE."""
        if not node_ids:
            raise MissingArgumentError("node_ids is required")
        if len(set(node_ids)) != len(node_ids):
            raise IllegalArgumentError(f"duplicate node ids: {list(node_ids)}")

        previous = self.load_state()
        fmt = self._resolve_key_format(previous, key_format)
        ctx = OperationContext(
            operation_id=new_id(),
            operation=LifecycleOperation.DEPLOY,
            node_id=None,
            node_ids=list(node_ids),
            key_format=fmt,
            previous=previous,
            targets=set(node_ids),
        )
        steps = [
            *self._key_generation_steps(),
            self._render_step(),
            Step("install_chart", action=self._install_chart),
            self._fan_out_step("wait_for_pods", lambda c: c.node_ids, self.health.wait_for_pod),
            self._stage_step(),
            self._start_step(),
            self._wait_active_step(),
            Step("persist_state", action=self._persist_state),
        ]
        return await self._execute(ctx, steps)

    async def add(
        self,
        node_id: str,
        *,
        address: str | None = None,
        weight: int | None = None,
        key_format: KeyFormat | None = None,
    ) -> LifecycleResult:
        """Add ``node_id`` without touching any existing node's key material."""
        if not node_id:
            raise MissingArgumentError("node_id is required")
        previous = self._require_state()
        if node_id in previous.node_ids:
            raise IllegalArgumentError(f"node {node_id} already exists", node_id=node_id)
        fmt = self._resolve_key_format(previous, key_format)

        ctx = OperationContext(
            operation_id=new_id(),
            operation=LifecycleOperation.ADD,
            node_id=node_id,
            node_ids=[*previous.node_ids, node_id],
            key_format=fmt,
            previous=previous,
            targets={node_id},
            addresses={node_id: address} if address else {},
            weights={node_id: weight} if weight is not None else {},
        )
        steps = [
            Step("snapshot_keys", action=self._snapshot),
            *self._key_generation_steps(),
            self._render_step(),
            *self._freeze_steps(),
            Step("upgrade_chart", action=self._upgrade_chart),
            self._fan_out_step("wait_for_pods", lambda c: [c.node_id], self.health.wait_for_pod),
            self._stage_step(),
            self._start_step(),
            self._wait_active_step(),
            Step("verify_non_interference", action=self._verify_non_interference),
            Step("persist_state", action=self._persist_state),
        ]
        return await self._execute(ctx, steps)

    async def update(
        self,
        node_id: str,
        *,
        regenerate_gossip_keys: bool = False,
        regenerate_tls_keys: bool = False,
        address: str | None = None,
        weight: int | None = None,
    ) -> LifecycleResult:
        """
        Update ``node_id`` in place.

        Only the target's selected keys are backed up and regenerated; the
        topology is re-rendered so address and weight changes take effect.
        """
        if not node_id:
            raise MissingArgumentError("node_id is required")
        previous = self._require_state()
        if node_id not in previous.node_ids:
            raise IllegalArgumentError(f"node {node_id} does not exist", node_id=node_id)

        ctx = OperationContext(
            operation_id=new_id(),
            operation=LifecycleOperation.UPDATE,
            node_id=node_id,
            node_ids=list(previous.node_ids),
            key_format=previous.key_format,
            previous=previous,
            targets={node_id},
            addresses={node_id: address} if address else {},
            weights={node_id: weight} if weight is not None else {},
            regenerate_gossip_keys=regenerate_gossip_keys,
            regenerate_tls_keys=regenerate_tls_keys,
        )
        regenerates = regenerate_gossip_keys or regenerate_tls_keys
        steps = [
            Step("snapshot_keys", action=self._snapshot),
            Step("backup_keys", action=self._backup_target_keys, skip=lambda c: not regenerates),
            *self._key_generation_steps(),
            self._render_step(),
            *self._freeze_steps(),
            Step("upgrade_chart", action=self._upgrade_chart),
            self._stage_step(),
            self._start_step(),
            self._wait_active_step(),
            Step("verify_non_interference", action=self._verify_non_interference),
            Step("persist_state", action=self._persist_state),
        ]
        return await self._execute(ctx, steps)

    async def delete(self, node_id: str) -> LifecycleResult:
        """
        Remove ``node_id`` from the network.

        Remaining nodes keep their keys and account ids. The removed node's
        key files are moved to a backup and its ``public.pfx`` entries dropped.
        """
        if not node_id:
            raise MissingArgumentError("node_id is required")
        previous = self._require_state()
        if node_id not in previous.node_ids:
            raise IllegalArgumentError(f"node {node_id} does not exist", node_id=node_id)
        if len(previous.node_ids) == 1:
            raise IllegalArgumentError(
                f"cannot delete {node_id}: it is the last node of the network",
                node_id=node_id,
            )

        ctx = OperationContext(
            operation_id=new_id(),
            operation=LifecycleOperation.DELETE,
            node_id=node_id,
            node_ids=[n for n in previous.node_ids if n != node_id],
            key_format=previous.key_format,
            previous=previous,
        )
        steps = [
            Step("snapshot_keys", action=self._snapshot),
            self._render_step(),
            *self._freeze_steps(),
            self._stage_step(),
            Step("upgrade_chart", action=self._upgrade_chart),
            self._start_step(),
            self._wait_active_step(),
            Step("retire_keys", action=self._retire_removed_keys),
            Step("verify_non_interference", action=self._verify_non_interference),
            Step("persist_state", action=self._persist_state),
        ]
        return await self._execute(ctx, steps)

    # ─── Non-interference ─────────────────────────────────────────

    def snapshot_key_hashes(self, node_ids: Sequence[str]) -> KeyHashes:
        """SHA-256 of every key and certificate file each node has on disk."""
        hashes: KeyHashes = {}
        for node_id in node_ids:
            files: dict[str, str] = {}
            for path in self._node_key_paths(node_id):
                if path.exists():
                    files[path.name] = hashlib.sha256(path.read_bytes()).hexdigest()
            hashes[node_id] = files
        return hashes

    def _node_key_paths(self, node_id: str) -> list[Path]:
        paths: list[Path] = []
        for role in (SigningRole(), AgreementRole(), TLSRole()):
            paths.extend(key_file_paths(role, node_id, self.keys_dir))
        paths.append(self.keys_dir / f"private-{node_id}.pfx")
        return paths

    def _untouched_nodes(self, ctx: OperationContext) -> list[str]:
        return [
            n for n in ctx.existing_node_ids
            if n not in ctx.targets and n != ctx.node_id
        ]

    async def _snapshot(self, ctx: OperationContext) -> None:
        ctx.hashes_before = await asyncio.to_thread(
            self.snapshot_key_hashes, self._untouched_nodes(ctx),
        )

    async def _verify_non_interference(self, ctx: OperationContext) -> None:
        after = await asyncio.to_thread(self.snapshot_key_hashes, list(ctx.hashes_before))
        changed = {
            node_id: sorted(
                name for name in set(before) | set(after[node_id])
                if before.get(name) != after[node_id].get(name)
            )
            for node_id, before in ctx.hashes_before.items()
        }
        changed = {n: files for n, files in changed.items() if files}
        if changed:
            self._logger.error("non_interference_violated", changed=changed)
            raise NonInterferenceError(
                f"key files of untouched nodes changed: {changed}",
                changed=changed,
            )
        self._logger.info("non_interference_verified", nodes=list(ctx.hashes_before))

    # ─── Step Builders ────────────────────────────────────────────

    def _key_generation_steps(self) -> list[Step]:
        return [
            Step(
                "generate_keys",
                fan_out=lambda c: [
                    SubTask(n, partial(self._generate_node_keys, c, n))
                    for n in c.node_ids if n in c.targets
                ],
                concurrency=self._config.lifecycle.parallelism,
            ),
            # Single writer: public.pfx is rewritten once, after all nodes' keys exist
            Step(
                "update_public_pfx",
                action=self._update_public_pfx,
                skip=lambda c: (
                    c.key_format != KeyFormat.PFX
                    or not c.targets
                    or (c.operation == LifecycleOperation.UPDATE and not c.regenerate_gossip_keys)
                ),
            ),
        ]

    def _render_step(self) -> Step:
        return Step("render_topology", action=self._render, rollback=self._restore_topology_file)

    def _freeze_steps(self) -> list[Step]:
        return [
            Step("freeze", action=self._freeze_network),
            self._fan_out_step(
                "wait_for_freeze",
                lambda c: c.existing_node_ids,
                self.health.wait_for_freeze_complete,
            ),
        ]

    # Remote calls retry inside RemoteStager; the steps themselves run once so
    # staging.max_attempts bounds the total.
    def _stage_step(self) -> Step:
        return Step(
            "stage",
            fan_out=self._staging_tasks,
            concurrency=self._config.staging.concurrency,
        )

    def _start_step(self) -> Step:
        command = self._config.lifecycle.node_start_command
        return Step(
            "start_nodes",
            fan_out=lambda c: [
                SubTask(n, partial(self.stager.exec, n, command)) for n in c.node_ids
            ],
        )

    def _wait_active_step(self) -> Step:
        return Step(
            "wait_for_active",
            fan_out=lambda c: [
                SubTask(n, partial(self._wait_healthy, c, n)) for n in c.node_ids
            ],
            concurrency=self._config.lifecycle.parallelism,
        )

    def _fan_out_step(
        self,
        name: str,
        nodes: Callable[[OperationContext], list[str]],
        run: Callable[[str], Awaitable[object]],
    ) -> Step:
        return Step(
            name,
            fan_out=lambda c: [SubTask(n, partial(run, n)) for n in nodes(c)],
            concurrency=self._config.lifecycle.parallelism,
        )

    # ─── Step Actions ─────────────────────────────────────────────

    async def _generate_node_keys(self, ctx: OperationContext, node_id: str) -> None:
        written: list[Path] = []
        if ctx.key_format == KeyFormat.PFX:
            written.append(await self.key_manager.generate_private_pfx_keys(
                self._keytool, node_id, self.keys_dir,
            ))
        else:
            written += await asyncio.to_thread(
                self.key_manager.generate_pem_gossip_keys, node_id, self.keys_dir,
            )
        written += await asyncio.to_thread(
            self.key_manager.generate_tls_keys, node_id, self.keys_dir,
        )
        ctx.key_files.extend(written)

    async def _update_public_pfx(self, ctx: OperationContext) -> None:
        targets = [n for n in ctx.node_ids if n in ctx.targets]
        await self.key_manager.update_public_pfx_key(self._keytool, targets, self.keys_dir)

    async def _render(self, ctx: OperationContext) -> None:
        previous = ctx.previous
        ctx.topology = render_topology(
            ctx.node_ids,
            network_config=self._config.network,
            previous=previous.topology if previous else None,
            high_water=previous.account_high_water if previous else None,
            addresses=ctx.addresses,
            weights=ctx.weights,
        )
        path = self.topology_file
        path.parent.mkdir(parents=True, exist_ok=True)
        ctx.previous_config_txt = path.read_text() if path.exists() else None
        path.write_text(ctx.topology.to_config_txt())
        ctx.topology_file = path
        self._logger.info("topology_rendered", nodes=ctx.topology.node_ids, path=str(path))

    async def _restore_topology_file(self, ctx: OperationContext) -> None:
        if ctx.previous_config_txt is None:
            self.topology_file.unlink(missing_ok=True)
        else:
            self.topology_file.write_text(ctx.previous_config_txt)

    async def _install_chart(self, ctx: OperationContext) -> None:
        await self._charts.install(self.namespace, ctx.topology)

    async def _upgrade_chart(self, ctx: OperationContext) -> None:
        await self._charts.upgrade(self.namespace, ctx.topology)

    async def _freeze_network(self, ctx: OperationContext) -> None:
        assert ctx.previous is not None
        await self._freeze.freeze(ctx.previous.topology)
        self._logger.info("freeze_submitted", nodes=ctx.existing_node_ids)

    def _staging_tasks(self, ctx: OperationContext) -> list[SubTask]:
        assert ctx.topology_file is not None
        plan = build_staging_plan(
            ctx.node_ids,
            keys_dir=self.keys_dir,
            key_format=ctx.key_format,
            topology_file=ctx.topology_file,
            targets=ctx.targets,
        )

        async def _stage(node_id: str) -> None:
            await self.stager.stage(plan.for_node(node_id))
            if node_id not in ctx.nodes_staged:
                ctx.nodes_staged.append(node_id)

        return [SubTask(n, partial(_stage, n)) for n in plan.node_ids]

    async def _wait_healthy(self, ctx: OperationContext, node_id: str) -> None:
        await self.health.wait_for_active(node_id)
        if node_id in ctx.targets and ctx.operation in (
            LifecycleOperation.DEPLOY, LifecycleOperation.ADD,
        ):
            await self.health.wait_for_proxies(node_id)

    async def _backup_target_keys(self, ctx: OperationContext) -> None:
        assert ctx.node_id is not None
        retention = self._config.keys.backup_retention
        if ctx.regenerate_gossip_keys:
            if ctx.key_format == KeyFormat.PFX:
                backup_old_pfx_keys([ctx.node_id], self.keys_dir)
                prune_backups(self.keys_dir, PFX_BACKUP_PREFIX, retention)
            else:
                backup_old_pem_keys([ctx.node_id], self.keys_dir)
                prune_backups(self.keys_dir, PEM_BACKUP_PREFIX, retention)
        if ctx.regenerate_tls_keys:
            backup_old_tls_keys([ctx.node_id], self.keys_dir)
            prune_backups(self.keys_dir, TLS_BACKUP_PREFIX, retention)

    async def _retire_removed_keys(self, ctx: OperationContext) -> None:
        assert ctx.node_id is not None
        retention = self._config.keys.backup_retention
        if ctx.key_format == KeyFormat.PFX:
            await self.key_manager.remove_public_pfx_key(
                self._keytool, [ctx.node_id], self.keys_dir,
            )
            backup_old_pfx_keys([ctx.node_id], self.keys_dir)
            prune_backups(self.keys_dir, PFX_BACKUP_PREFIX, retention)
        else:
            backup_old_pem_keys([ctx.node_id], self.keys_dir)
            prune_backups(self.keys_dir, PEM_BACKUP_PREFIX, retention)
        backup_old_tls_keys([ctx.node_id], self.keys_dir)
        prune_backups(self.keys_dir, TLS_BACKUP_PREFIX, retention)

    async def _persist_state(self, ctx: OperationContext) -> None:
        assert ctx.topology is not None
        previous_high = ctx.previous.account_high_water if ctx.previous else 0
        high_water = max(
            [previous_high, *(e.account_id.num for e in ctx.topology.entries)],
        )
        state = NetworkState(
            namespace=self.namespace,
            key_format=ctx.key_format,
            topology=ctx.topology,
            account_high_water=high_water,
        )
        await asyncio.to_thread(save_state, state, self.state_path)

    # ─── Internal ─────────────────────────────────────────────────

    def _require_state(self) -> NetworkState:
        state = self.load_state()
        if state is None:
            raise IllegalArgumentError(
                f"no network state at {self.state_path}; deploy the network first",
            )
        return state

    def _resolve_key_format(
        self,
        previous: NetworkState | None,
        requested: KeyFormat | None,
    ) -> KeyFormat:
        fmt = requested or (previous.key_format if previous else self._config.keys.key_format)
        if previous is not None and previous.key_format != fmt:
            raise KeyFormatConflictError(
                f"network uses {previous.key_format} keys; {fmt} was requested",
                network_format=previous.key_format,
                requested_format=fmt,
            )
        if fmt == KeyFormat.PFX and self._keytool is None:
            raise MissingArgumentError("a KeystoreTool is required for pfx keys")
        return fmt

    async def _execute(self, ctx: OperationContext, steps: list[Step]) -> LifecycleResult:
        start = time.monotonic()
        bind_operation(ctx.operation_id, str(ctx.operation), node_id=ctx.node_id)
        self._logger.info(
            "lifecycle_operation_started",
            nodes=ctx.node_ids,
            key_format=str(ctx.key_format),
        )
        try:
            pipeline = TaskPipeline(
                str(ctx.operation),
                steps,
                concurrency=self._config.lifecycle.parallelism,
            )
            result = await pipeline.run(ctx)
            assert ctx.topology is not None
            outcome = LifecycleResult(
                operation_id=ctx.operation_id,
                operation=ctx.operation,
                node_id=ctx.node_id,
                topology=ctx.topology,
                step_outcomes=result.step_outcomes,
                nodes_staged=list(ctx.nodes_staged),
                key_files=[str(p) for p in ctx.key_files],
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            self._logger.info(
                "lifecycle_operation_complete",
                nodes_staged=outcome.nodes_staged,
                duration_ms=outcome.duration_ms,
            )
            return outcome
        finally:
            clear_operation()
