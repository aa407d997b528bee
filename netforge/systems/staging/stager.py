"""
Netforge -- Remote Stager

Pushes rendered files into node pods and runs commands there. Every remote
call is retried with exponential backoff while the failure is I/O-class;
a terminal cluster error propagates on the first attempt. Exhausting the
attempts raises ``RemoteStagingError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import TypeVar

import structlog

from netforge.config import NetworkConfig, StagingConfig
from netforge.errors import ClusterAccessError, RemoteStagingError
from netforge.systems.staging.cluster import ClusterAccess
from netforge.systems.staging.plan import NodeStaging

logger = structlog.get_logger("netforge.staging")

T = TypeVar("T")


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ClusterAccessError):
        return exc.retryable
    return isinstance(exc, (OSError, TimeoutError))


class RemoteStager:
    def __init__(
        self,
        cluster: ClusterAccess,
        config: StagingConfig | None = None,
        network: NetworkConfig | None = None,
    ) -> None:
        self._cluster = cluster
        self._config = config or StagingConfig()
        self._network = network or NetworkConfig()
        self._logger = logger.bind(system="staging")

    def pod_name(self, node_id: str) -> str:
        return self._network.pod_name(node_id)

    # ─── Primitives ───────────────────────────────────────────────

    async def stage_files(
        self,
        node_id: str,
        files: Sequence[Path],
        dest_dir: str,
    ) -> list[str]:
        """Copy ``files`` into ``dest_dir`` of the node's root container."""
        pod = self.pod_name(node_id)
        remote: list[str] = []
        for path in files:
            await self._retrying(
                "copy_to",
                node_id,
                lambda path=path: self._cluster.copy_to(
                    pod, self._config.root_container, path, dest_dir,
                ),
            )
            remote.append(f"{dest_dir}/{path.name}")
        self._logger.debug("files_staged", node_id=node_id, dest_dir=dest_dir, count=len(remote))
        return remote

    async def exec(self, node_id: str, command: str | list[str]) -> str:
        argv = ["bash", "-c", command] if isinstance(command, str) else command
        pod = self.pod_name(node_id)
        return await self._retrying(
            "exec",
            node_id,
            lambda: self._cluster.exec_container(pod, self._config.root_container, argv),
        )

    # ─── Composite ────────────────────────────────────────────────

    async def stage_topology(self, node_id: str, topology_file: Path) -> list[str]:
        return await self.stage_files(node_id, [topology_file], self._config.hapi_path)

    async def stage_node_keys(self, node_id: str, files: Sequence[Path]) -> list[str]:
        if not files:
            return []
        await self.exec(node_id, ["mkdir", "-p", self._config.keys_path])
        return await self.stage_files(node_id, files, self._config.keys_path)

    async def set_permissions(self, node_id: str) -> None:
        keys_path = self._config.keys_path
        await self.exec(node_id, ["chown", "-R", self._config.file_owner, keys_path])
        await self.exec(node_id, ["chmod", "-R", self._config.file_mode, keys_path])

    async def stage(self, entry: NodeStaging) -> list[str]:
        """Stage one node's share of a plan: topology, keys, ownership."""
        staged = await self.stage_topology(entry.node_id, entry.topology_file)
        staged += await self.stage_node_keys(entry.node_id, entry.all_key_files)
        if entry.all_key_files:
            await self.set_permissions(entry.node_id)
        self._logger.info("node_staged", node_id=entry.node_id, files=len(staged))
        return staged

    # ─── Retry ────────────────────────────────────────────────────

    async def _retrying(
        self,
        operation: str,
        node_id: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        max_attempts = self._config.max_attempts
        last: BaseException | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                return await call()
            except Exception as exc:
                if not _is_transient(exc):
                    raise
                last = exc
                if attempt == max_attempts:
                    break
                delay = min(
                    self._config.backoff_base_s * (2 ** (attempt - 1)),
                    self._config.backoff_max_s,
                )
                self._logger.warning(
                    "remote_call_retry",
                    operation=operation,
                    node_id=node_id,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

        self._logger.error(
            "remote_call_exhausted",
            operation=operation,
            node_id=node_id,
            attempts=max_attempts,
        )
        raise RemoteStagingError(
            f"{operation} on {node_id} failed after {max_attempts} attempts: {last}",
            node_id=node_id,
            operation=operation,
        ) from last
