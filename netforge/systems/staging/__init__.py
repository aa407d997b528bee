"""
Netforge -- Remote Staging

Copies rendered topology and key files into node pods over the cluster access
layer, with bounded retries.

Public interface:
  ClusterAccess       -- contract for the orchestration-layer client
  RemoteStager        -- retrying copy / exec against node pods
  StagingPlan         -- per-node file selection
  build_staging_plan  -- builds a plan for an operation
"""

from netforge.systems.staging.cluster import ClusterAccess
from netforge.systems.staging.plan import NodeStaging, StagingPlan, build_staging_plan
from netforge.systems.staging.stager import RemoteStager

__all__ = [
    "ClusterAccess",
    "RemoteStager",
    "StagingPlan",
    "NodeStaging",
    "build_staging_plan",
]
