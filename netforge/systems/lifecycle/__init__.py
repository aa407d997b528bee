"""
Netforge -- Node Lifecycle

Sequences deployment and the add / update / delete of a node, keeping every
other node's key material untouched.

Public interface:
  NodeLifecycleOrchestrator  -- deploy / add / update / delete
  LifecycleResult            -- what an operation produced
  NetworkState               -- persisted node registry
  ChartInstaller / FreezeController -- external collaborators
"""

from netforge.systems.lifecycle.contracts import ChartInstaller, FreezeController
from netforge.systems.lifecycle.health import NodeHealthChecker, parse_platform_status
from netforge.systems.lifecycle.orchestrator import NodeLifecycleOrchestrator
from netforge.systems.lifecycle.state import NetworkState, load_state, save_state
from netforge.systems.lifecycle.types import LifecycleResult, OperationContext

__all__ = [
    "NodeLifecycleOrchestrator",
    "LifecycleResult",
    "OperationContext",
    "NetworkState",
    "load_state",
    "save_state",
    "ChartInstaller",
    "FreezeController",
    "NodeHealthChecker",
    "parse_platform_status",
]
