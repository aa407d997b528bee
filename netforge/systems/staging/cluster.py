"""
Netforge -- Cluster Access Contract

The operations Netforge needs from the container orchestration layer. The
implementation lives outside this package; it is scoped to one namespace.

Implementations raise ``ClusterAccessError`` with ``retryable=True`` for
transient I/O and ``retryable=False`` for terminal state (pod gone, namespace
missing). ``OSError`` and ``TimeoutError`` are treated as transient.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ClusterAccess(Protocol):
    async def copy_to(
        self,
        pod: str,
        container: str,
        local_path: Path,
        dest_dir: str,
    ) -> None: ...

    async def copy_from(
        self,
        pod: str,
        container: str,
        remote_path: str,
        dest_dir: Path,
    ) -> Path: ...

    async def exec_container(self, pod: str, container: str, command: list[str]) -> str: ...

    async def get_pods_by_label(self, labels: list[str]) -> list[str]: ...

    async def port_forward(self, pod: str, local_port: int, pod_port: int) -> Any: ...

    async def is_pod_ready(self, labels: list[str]) -> bool: ...
