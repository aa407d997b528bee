"""
Netforge -- Node Health Polling

Bounded polling of pod readiness and the platform status a node reports on
its metrics endpoint. Running out of attempts raises
``NodeActivationTimeoutError``; it is never retried by the pipeline.
"""

from __future__ import annotations

import asyncio

import structlog

from netforge.config import LifecycleConfig, NetworkConfig
from netforge.errors import NodeActivationTimeoutError, RemoteStagingError
from netforge.primitives.common import NodeStatus
from netforge.systems.staging.cluster import ClusterAccess
from netforge.systems.staging.stager import RemoteStager

logger = structlog.get_logger("netforge.lifecycle.health")


def parse_platform_status(output: str) -> NodeStatus:
    """
    Parse ``platform_PlatformStatus{...} 2.0`` from metrics output.

    Anything unparseable reads as ``NO_VALUE``.
    """
    for line in reversed(output.strip().splitlines()):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            code = int(float(line.split()[-1]))
        except ValueError:
            continue
        try:
            return NodeStatus(code)
        except ValueError:
            return NodeStatus.NO_VALUE
    return NodeStatus.NO_VALUE


class NodeHealthChecker:
    def __init__(
        self,
        cluster: ClusterAccess,
        stager: RemoteStager,
        config: LifecycleConfig | None = None,
        network: NetworkConfig | None = None,
    ) -> None:
        self._cluster = cluster
        self._stager = stager
        self._config = config or LifecycleConfig()
        self._network = network or NetworkConfig()
        self._logger = logger.bind(system="lifecycle.health")

    def node_label(self, node_id: str) -> str:
        return self._network.node_label_template.format(node_id=node_id)

    async def node_status(self, node_id: str) -> NodeStatus:
        output = await self._stager.exec(node_id, self._config.status_command)
        return parse_platform_status(output)

    async def wait_for_status(
        self,
        node_id: str,
        expected: NodeStatus,
        *,
        max_attempts: int | None = None,
        delay_s: float | None = None,
    ) -> int:
        """Poll until the node reports ``expected``. Returns the attempts used."""
        max_attempts = max_attempts or self._config.status_max_attempts
        delay_s = self._config.status_delay_s if delay_s is None else delay_s
        last = NodeStatus.NO_VALUE
        for attempt in range(1, max_attempts + 1):
            try:
                last = await self.node_status(node_id)
            except RemoteStagingError as exc:
                self._logger.debug("status_poll_failed", node_id=node_id, error=str(exc))
            else:
                if last == expected:
                    self._logger.info(
                        "node_status_reached",
                        node_id=node_id,
                        status=expected.name,
                        attempts=attempt,
                    )
                    return attempt
            if attempt < max_attempts:
                await asyncio.sleep(delay_s)

        self._logger.error(
            "node_status_timeout",
            node_id=node_id,
            expected=expected.name,
            last=last.name,
            attempts=max_attempts,
        )
        raise NodeActivationTimeoutError(
            f"{node_id} did not reach {expected.name} after {max_attempts} attempts "
            f"(last status {last.name})",
            node_id=node_id,
        )

    async def wait_for_active(self, node_id: str) -> int:
        return await self.wait_for_status(node_id, NodeStatus.ACTIVE)

    async def wait_for_freeze_complete(self, node_id: str) -> int:
        return await self.wait_for_status(
            node_id,
            NodeStatus.FREEZE_COMPLETE,
            max_attempts=self._config.freeze_max_attempts,
            delay_s=self._config.freeze_delay_s,
        )

    async def wait_for_pod(self, node_id: str) -> None:
        await self._wait_ready(node_id, [self.node_label(node_id)], "pod")

    async def wait_for_proxies(self, node_id: str) -> None:
        """Wait for the node's HAProxy and Envoy proxies to become ready."""
        node_label = self.node_label(node_id)
        await self._wait_ready(node_id, [self._network.haproxy_label, node_label], "haproxy")
        await self._wait_ready(node_id, [self._network.envoy_proxy_label, node_label], "envoy")

    async def _wait_ready(self, node_id: str, labels: list[str], kind: str) -> None:
        max_attempts = self._config.pod_ready_max_attempts
        for attempt in range(1, max_attempts + 1):
            if await self._cluster.is_pod_ready(labels):
                self._logger.debug("pod_ready", node_id=node_id, kind=kind, attempts=attempt)
                return
            if attempt < max_attempts:
                await asyncio.sleep(self._config.pod_ready_delay_s)
        raise NodeActivationTimeoutError(
            f"{kind} for {node_id} not ready after {max_attempts} attempts",
            node_id=node_id,
            labels=labels,
        )
