"""
Netforge -- Lifecycle Collaborators

Chart installation and consensus freeze live outside this package. The
orchestrator only hands them the rendered topology.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from netforge.systems.topology.types import NetworkTopology


@runtime_checkable
class ChartInstaller(Protocol):
    async def install(self, namespace: str, topology: NetworkTopology) -> None: ...

    async def upgrade(self, namespace: str, topology: NetworkTopology) -> None: ...


@runtime_checkable
class FreezeController(Protocol):
    async def freeze(self, topology: NetworkTopology) -> None:
        """Submit a freeze for the network described by ``topology``."""
        ...
